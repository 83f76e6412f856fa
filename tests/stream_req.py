import asyncio
import sys

from capsule_chat.stream_consumer import StreamConsumer

# Manual smoke test against a running relay (`capsule-chat serve`) and Ollama.
RELAY_URL = "http://localhost:3000"
MODEL = "llama3.2:3b"


async def stream_response(prompt: str):
    """
    Streams one reply through the relay, printing the text as it grows.
    """
    printed = 0

    def show(text: str):
        nonlocal printed
        print(text[printed:], end="", flush=True)
        printed = len(text)

    print("--- Sending streaming request ---")
    async with StreamConsumer(base_url=RELAY_URL) as consumer:
        reply = await consumer.get_response(prompt, MODEL, on_text=show)
        stats = consumer.last_stats

    if printed == 0:
        print(reply, end="")
    print("\n--- Stream finished ---")
    print(f"fragments={stats.fragments} dropped_lines={stats.dropped_lines} done={stats.done_seen} error={stats.error}")


if __name__ == "__main__":
    prompt = " ".join(sys.argv[1:]) or "Name three uses of a paperclip."
    asyncio.run(stream_response(prompt))
