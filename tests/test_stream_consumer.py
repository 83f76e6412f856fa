import asyncio
import json

import httpx
import pytest

from capsule_chat.main import app, get_upstream_client
from capsule_chat.ollama_client import OllamaClient
from capsule_chat.stream_consumer import BACKEND_UNREACHABLE, NO_RESPONSE, StreamConsumer

RELAY_URL = "http://relay.test"


def chunked(*chunks: bytes, then=None):
    """An async body delivered in pieces; `then` runs after the last piece."""
    async def body():
        for chunk in chunks:
            yield chunk
        if then is not None:
            await then()
    return body()


def consumer_for(handler, **kwargs) -> StreamConsumer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=RELAY_URL)
    return StreamConsumer(client=client, **kwargs)


def replying(*chunks: bytes, status_code: int = 200):
    return lambda request: httpx.Response(status_code, content=chunked(*chunks))


@pytest.fixture
def recorder():
    """Collects the callbacks a consumer fires during one turn."""
    class Recorder:
        def __init__(self):
            self.texts = []
            self.typing = []

    return Recorder()


@pytest.mark.asyncio
async def test_fragments_split_across_reads_are_reassembled():
    consumer = consumer_for(replying(b'{"response":"Hel"}\n{"respon', b'se":"lo"}\n{"done":true}\n'))
    assert await consumer.get_response("hi", "llama3.2:3b") == "Hello"
    assert consumer.last_stats.done_seen is True
    assert consumer.last_stats.fragments == 3


@pytest.mark.asyncio
async def test_invalid_line_is_skipped_without_stopping():
    consumer = consumer_for(replying(b'not-json\n{"response":"ok"}\n'))
    assert await consumer.get_response("hi", "llama3.2:3b") == "ok"
    assert consumer.last_stats.dropped_lines == 1


@pytest.mark.asyncio
async def test_stream_without_text_reports_no_response():
    consumer = consumer_for(replying(b'{"done":true}\n'))
    assert await consumer.get_response("hi", "llama3.2:3b") == NO_RESPONSE


@pytest.mark.asyncio
async def test_empty_body_reports_no_response():
    consumer = consumer_for(replying())
    assert await consumer.get_response("hi", "llama3.2:3b") == NO_RESPONSE


@pytest.mark.asyncio
async def test_unreachable_relay_returns_sentinel(recorder):
    def refuse(request):
        raise httpx.ConnectError("Connection refused", request=request)

    consumer = consumer_for(refuse)
    reply = await consumer.get_response("hi", "llama3.2:3b", on_typing=recorder.typing.append)

    assert reply == BACKEND_UNREACHABLE
    assert recorder.typing == [False]


@pytest.mark.asyncio
async def test_error_status_returns_sentinel():
    consumer = consumer_for(
        lambda request: httpx.Response(500, json={"error": "Failed to connect to AI model"})
    )
    assert await consumer.get_response("hi", "llama3.2:3b") == BACKEND_UNREACHABLE


@pytest.mark.asyncio
async def test_sends_streaming_request_to_chat_endpoint():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, content=b'{"response":"x"}\n')

    await consumer_for(handler).get_response("What is Python?", "qwen2.5:3b")

    assert seen[0].method == "POST"
    assert seen[0].url.path == "/api/chat"
    assert json.loads(seen[0].content) == {"model": "qwen2.5:3b", "prompt": "What is Python?", "stream": True}


@pytest.mark.asyncio
async def test_partial_text_and_typing_are_reported(recorder):
    consumer = consumer_for(replying(b'{"response":"A"}\n', b'{"response":"B"}\n{"response":"C"}\n'))

    reply = await consumer.get_response(
        "hi", "llama3.2:3b", on_text=recorder.texts.append, on_typing=recorder.typing.append
    )

    assert reply == "ABC"
    assert recorder.texts == ["A", "AB", "ABC"]
    assert recorder.typing == [True, False]


@pytest.mark.asyncio
async def test_each_call_starts_a_fresh_accumulator():
    replies = iter([b'{"response":"first"}\n{"respon', b'{"response":"second"}\n'])
    consumer = consumer_for(lambda request: httpx.Response(200, content=next(replies)))

    assert await consumer.get_response("one", "llama3.2:3b") == "first"
    assert await consumer.get_response("two", "llama3.2:3b") == "second"


@pytest.mark.asyncio
async def test_broken_stream_keeps_partial_text():
    async def fail():
        raise httpx.ReadError("connection reset")

    consumer = consumer_for(lambda request: httpx.Response(200, content=chunked(b'{"response":"par"}\n', then=fail)))

    assert await consumer.get_response("hi", "llama3.2:3b") == "par"
    assert "connection reset" in consumer.last_stats.error


@pytest.mark.asyncio
async def test_relay_error_line_without_text_is_a_failure():
    consumer = consumer_for(replying(b'{"error":"Upstream stream interrupted","done":true}\n'))
    assert await consumer.get_response("hi", "llama3.2:3b") == BACKEND_UNREACHABLE
    assert consumer.last_stats.error == "Upstream stream interrupted"


@pytest.mark.asyncio
async def test_total_timeout_stops_a_stream_that_never_ends(recorder):
    async def hang():
        await asyncio.sleep(30)

    consumer = consumer_for(
        lambda request: httpx.Response(200, content=chunked(b'{"response":"so far"}\n', then=hang)),
        total_timeout=0.1,
    )

    reply = await consumer.get_response("hi", "llama3.2:3b", on_typing=recorder.typing.append)

    assert reply == "so far"
    assert recorder.typing[-1] is False


@pytest.mark.asyncio
async def test_round_trip_through_the_relay():
    pieces = (b'{"response":"Bon"}\n{"response":"j', b'our"}\n', b'{"done":true}\n')
    upstream = OllamaClient(
        "http://ollama.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=chunked(*pieces))),
    )
    app.dependency_overrides[get_upstream_client] = lambda: upstream
    try:
        relay = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=RELAY_URL)
        async with StreamConsumer(client=relay) as consumer:
            assert await consumer.get_response("Say hello in French", "mistral:7b") == "Bonjour"
        await relay.aclose()
    finally:
        app.dependency_overrides.clear()
        await upstream.close()
