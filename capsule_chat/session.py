import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Set, Union

from loguru import logger

from config import settings
from capsule_chat.conversation import (
    ConversationRecord,
    ConversationTurn,
    MediaAttachment,
    SavedChatStore,
    default_chat_name,
)
from capsule_chat.speech import Speaker
from capsule_chat.stream_consumer import BACKEND_UNREACHABLE, StreamConsumer

MODEL_DISPLAY_NAMES = {
    "deepseek-r1:1.5b": "DeepSeek R1",
    "qwen2.5:3b": "Qwen2.5",
    "gemma2:2b": "Gemma2",
    "llama3.2:3b": "Llama 3.2",
    "mistral:7b": "Mistral",
    "llama3.2-vision:11b": "Llama Vision",
}


def display_name(model: Optional[str]) -> str:
    if not model:
        return "AI"
    return MODEL_DISPLAY_NAMES.get(model) or model.split(":")[0]


class ChatView(Protocol):
    def show_turn(self, turn: ConversationTurn, author: str) -> None: ...

    def show_partial(self, text: str) -> None: ...

    def set_typing(self, active: bool) -> None: ...

    def set_status(self, message: str, is_error: bool = False) -> None: ...


@dataclass
class ChatSession:
    """Everything one chat window owns."""
    model: str = field(default_factory=lambda: settings.DEFAULT_MODEL)
    history: List[ConversationTurn] = field(default_factory=list)
    auto_speak: bool = False


class ChatController:
    """
    Drives one ChatSession: sends turns, records replies, saves and loads.

    At most one turn is in flight. Submitting a new message cancels the
    stale stream, and the superseded call returns None without recording
    a reply.
    """

    def __init__(
        self,
        session: ChatSession,
        consumer: StreamConsumer,
        speaker: Speaker,
        view: ChatView,
        store: SavedChatStore,
    ):
        self.session = session
        self.consumer = consumer
        self.speaker = speaker
        self.view = view
        self.store = store
        self._inflight: Optional[asyncio.Task] = None
        self._superseded: Set[asyncio.Task] = set()

    def _record(self, turn: ConversationTurn):
        self.session.history.append(turn)
        author = "You" if turn.is_user else display_name(turn.model)
        self.view.show_turn(turn, author)

    async def _supersede_inflight(self):
        stale = self._inflight
        if stale is None or stale.done():
            return
        logger.info("New turn submitted; cancelling the stream still in flight")
        self._superseded.add(stale)
        stale.cancel()
        await asyncio.gather(stale, return_exceptions=True)

    async def send_message(self, text: str) -> Optional[str]:
        message = text.strip()
        if not message:
            return None

        self.speaker.stop()
        await self._supersede_inflight()
        self._record(ConversationTurn(text=message, is_user=True))

        model = self.session.model
        self.view.set_status(f"Connecting to {display_name(model)}...")
        task = asyncio.create_task(
            self.consumer.get_response(
                message,
                model,
                on_text=self.view.show_partial,
                on_typing=self.view.set_typing,
            )
        )
        self._inflight = task
        try:
            reply = await task
        except asyncio.CancelledError:
            if task in self._superseded:
                self._superseded.discard(task)
                return None
            raise
        finally:
            if self._inflight is task:
                self._inflight = None

        if reply == BACKEND_UNREACHABLE:
            self.view.set_status("Backend connection failed", is_error=True)
        else:
            self.view.set_status("Ready")
        self._record(ConversationTurn(text=reply, is_user=False, model=model))

        if self.session.auto_speak and reply != BACKEND_UNREACHABLE:
            self.speaker.speak(reply)
        return reply

    def add_upload(self, filename: str, content_type: Optional[str], data: bytes) -> ConversationTurn:
        turn = ConversationTurn(
            is_user=True,
            attachment=MediaAttachment(filename=filename, content_type=content_type, data=data),
        )
        self._record(turn)
        return turn

    def toggle_speech(self) -> bool:
        """Stops speech if speaking, otherwise speaks the latest reply."""
        if self.speaker.is_speaking:
            self.speaker.stop()
            return False
        for turn in reversed(self.session.history):
            if not turn.is_user:
                return self.speaker.speak(turn.display_text)
        return False

    def save_chat(self, name: Optional[str] = None) -> ConversationRecord:
        record = ConversationRecord(
            name=(name or "").strip() or default_chat_name(),
            messages=list(self.session.history),
            model=self.session.model,
        )
        self.store.add(record)
        self.view.set_status(f'Chat "{record.name}" saved')
        return record

    def load_chat(self, record: ConversationRecord):
        """Replaces the current history with `record`'s turns."""
        self.speaker.stop()
        self.session.history = []
        for turn in record.messages:
            self._record(turn)
        if record.model:
            self.session.model = record.model
        self.view.set_status(f"Loaded: {record.name}")

    def load_saved(self, name: str) -> Optional[ConversationRecord]:
        record = self.store.get(name)
        if record is None:
            self.view.set_status(f'No saved chat named "{name}"', is_error=True)
            return None
        self.load_chat(record)
        return record

    def import_chat(self, path: Union[str, Path]) -> ConversationRecord:
        record = self.store.import_file(path)
        self.load_chat(record)
        return record

    def export_chat(self, directory: Union[str, Path], name: Optional[str] = None) -> Path:
        record = self.save_chat(name)
        return self.store.export(record, directory)
