"""Capsule Chat CLI: Typer + Rich terminal interface.

Commands: serve, chat, chats, purge-uploads.
"""

import asyncio
import mimetypes
import shlex
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config import settings
from capsule_chat.conversation import ConversationFormatError, ConversationTurn, SavedChatStore
from capsule_chat.logging_config import setup_logging
from capsule_chat.session import ChatController, ChatSession, display_name
from capsule_chat.speech import Speaker
from capsule_chat.stream_consumer import StreamConsumer
from capsule_chat.uploads import purge_uploads

console = Console()

app = typer.Typer(
    name="capsule-chat",
    help="Chat with local Ollama models through the Capsule relay.",
    no_args_is_help=True,
)

HELP_TEXT = """[bold]Commands[/bold]
  /model NAME        switch model        /models          list models
  /save [NAME]       save chat           /load NAME       load saved chat
  /export DIR [NAME] save and export     /import FILE     load exported chat
  /upload FILE       attach a file       /speak           speak or stop
  /autospeak         toggle auto speak   /quit            leave"""


class ConsoleChatView:
    """Renders the chat in the terminal, streaming partial replies live."""

    def __init__(self, console: Console):
        self.console = console
        self._live: Optional[Live] = None

    def show_turn(self, turn: ConversationTurn, author: str):
        style = "blue" if turn.is_user else "magenta"
        self.console.print(Panel(Text(turn.display_text), title=author, title_align="left", border_style=style))

    def show_partial(self, text: str):
        if self._live is not None:
            self._live.update(Panel(Text(text), title="...", title_align="left", border_style="dim"))

    def set_typing(self, active: bool):
        if active and self._live is None:
            self._live = Live(Text("typing...", style="dim"), console=self.console, transient=True)
            self._live.start()
        elif not active and self._live is not None:
            self._live.stop()
            self._live = None

    def set_status(self, message: str, is_error: bool = False):
        self.console.print(f"[{'red' if is_error else 'dim'}]Status: {message}[/]")


# ── Commands ─────────────────────────────────────────────────────


@app.command()
def serve(
    host: str = typer.Option(settings.HOST, help="Interface to bind."),
    port: int = typer.Option(settings.PORT, help="Port to listen on."),
    workers: int = typer.Option(settings.WORKERS, help="Number of worker processes."),
) -> None:
    """Run the relay server."""
    import uvicorn

    console.print(f"Capsule relay on http://{host}:{port} (chat API at /api/chat)")
    console.print(f"Make sure Ollama is running at {settings.OLLAMA_URL}")
    uvicorn.run("capsule_chat.main:app", host=host, port=port, workers=workers)


@app.command()
def chat(
    model: str = typer.Option(settings.DEFAULT_MODEL, "--model", "-m", help="Model to chat with."),
    relay_url: str = typer.Option(settings.RELAY_URL, help="Base URL of the relay."),
    auto_speak: bool = typer.Option(False, "--auto-speak", help="Speak every reply."),
) -> None:
    """Start an interactive chat session."""
    setup_logging(console=False)
    asyncio.run(_chat_loop(ChatSession(model=model, auto_speak=auto_speak), relay_url))


@app.command("chats")
def list_chats() -> None:
    """List saved chats."""
    try:
        records = SavedChatStore(settings.CHAT_STORE_FILE).records()
    except (OSError, ConversationFormatError) as e:
        console.print(f"[red]Could not read saved chats: {e}[/]")
        raise typer.Exit(code=1)
    if not records:
        console.print("No saved chats yet")
        return
    table = Table(title="Saved chats")
    table.add_column("Name", style="bold")
    table.add_column("Model")
    table.add_column("Turns", justify="right")
    table.add_column("Saved")
    for record in records:
        table.add_row(
            record.name,
            display_name(record.model),
            str(len(record.messages)),
            record.timestamp.astimezone().strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("purge-uploads")
def purge(
    directory: Path = typer.Option(Path(settings.UPLOAD_DIR), help="Upload directory to empty."),
) -> None:
    """Delete every stored upload. Meant for a nightly cron job."""
    setup_logging()
    deleted = purge_uploads(directory)
    console.print(f"Deleted {deleted} file(s) from {directory}")


# ── Interactive loop ─────────────────────────────────────────────


async def _chat_loop(session: ChatSession, relay_url: str):
    view = ConsoleChatView(console)
    speaker = Speaker()
    store = SavedChatStore(settings.CHAT_STORE_FILE)
    async with StreamConsumer(base_url=relay_url) as consumer:
        controller = ChatController(session, consumer, speaker, view, store)
        console.print(Panel(
            f"Chatting with [bold]{display_name(session.model)}[/bold]. Type /help for commands.",
            title="Capsule Chat",
        ))
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold blue]> [/]")
            except (EOFError, KeyboardInterrupt):
                break
            if line.startswith("/"):
                if not _run_command(controller, line):
                    break
            else:
                await controller.send_message(line)
        speaker.stop()


def _run_command(controller: ChatController, line: str) -> bool:
    """Handles one slash command. Returns False when the user wants to leave."""
    try:
        parts = shlex.split(line[1:])
    except ValueError as e:
        controller.view.set_status(f"Could not parse command: {e}", is_error=True)
        return True
    if not parts:
        return True
    command, args = parts[0].lower(), parts[1:]
    session = controller.session

    if command in ("quit", "exit"):
        return False
    if command == "help":
        console.print(HELP_TEXT)
    elif command == "models":
        for name in settings.AVAILABLE_MODELS:
            marker = "*" if name == session.model else " "
            console.print(f" {marker} {name}  ({display_name(name)})")
    elif command == "model" and args:
        session.model = args[0]
        controller.view.set_status(f"Model set to {display_name(session.model)}")
    elif command in ("save", "load", "export", "import"):
        try:
            _run_file_command(controller, command, args)
        except (OSError, ValueError) as e:
            controller.view.set_status(f"Chat file error: {e}", is_error=True)
    elif command == "upload" and args:
        path = Path(args[0])
        try:
            data = path.read_bytes()
        except OSError as e:
            controller.view.set_status(f"Could not read {path}: {e}", is_error=True)
        else:
            controller.add_upload(path.name, mimetypes.guess_type(path.name)[0], data)
    elif command == "speak":
        controller.toggle_speech()
    elif command == "autospeak":
        session.auto_speak = not session.auto_speak
        controller.view.set_status(f"Auto speak {'on' if session.auto_speak else 'off'}")
    else:
        controller.view.set_status(f"Unknown command /{command}. Type /help.", is_error=True)
    return True


def _run_file_command(controller: ChatController, command: str, args: List[str]):
    """Save, load, export or import. Raises OSError or ValueError on bad files."""
    if command == "save":
        controller.save_chat(" ".join(args) or None)
    elif not args:
        controller.view.set_status(f"Usage: /{command} {'NAME' if command == 'load' else 'PATH'}", is_error=True)
    elif command == "load":
        controller.load_saved(" ".join(args))
    elif command == "export":
        path = controller.export_chat(args[0], " ".join(args[1:]) or None)
        controller.view.set_status(f"Exported to {path}")
    elif command == "import":
        controller.import_chat(args[0])


if __name__ == "__main__":
    app()
