"""
Conversation records and their client-local persistence.

Records use the same JSON shape as the browser client's exports
({name, messages: [{text, isUser, model, timestamp}], model, timestamp}),
so files can move between the two. Media attachments live only in memory;
a reloaded turn without text shows MEDIA_PLACEHOLDER instead.
"""
import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

MEDIA_PLACEHOLDER = "[Media message]"
STORE_KEY = "savedChats"

_UNSAFE_NAME = re.compile(r"[^\w.-]")


class ConversationFormatError(ValueError):
    """Raised when a document is not a valid saved chat."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_chat_name(now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    return "Chat_" + re.sub(r"\W", "_", stamp)


class MediaAttachment(BaseModel):
    filename: str
    content_type: Optional[str] = None
    data: bytes = b""

    def describe(self) -> str:
        return f"Uploaded file: {self.filename} ({self.content_type or 'unknown'})"


class ConversationTurn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    is_user: bool = Field(alias="isUser")
    model: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    attachment: Optional[MediaAttachment] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _placeholder_for_missing_media(self):
        if not self.text and self.attachment is None:
            self.text = MEDIA_PLACEHOLDER
        return self

    @property
    def display_text(self) -> str:
        if self.text:
            return self.text
        if self.attachment is not None:
            return self.attachment.describe()
        return MEDIA_PLACEHOLDER


class ConversationRecord(BaseModel):
    name: str = Field(default_factory=default_chat_name)
    messages: List[ConversationTurn]
    model: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_dict(cls, data) -> "ConversationRecord":
        if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
            raise ConversationFormatError("Invalid chat file")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConversationFormatError(f"Invalid chat file: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "ConversationRecord":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConversationFormatError(f"Invalid chat file: {e}") from e
        return cls.from_dict(data)


class SavedChatStore:
    """
    A small JSON key/value file holding saved chats under one key,
    mirroring the browser's local storage layout.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except ValueError as e:
            raise ConversationFormatError(f"Saved chat store {self.path} is unreadable: {e}") from e
        if not isinstance(data, dict):
            raise ConversationFormatError(f"Saved chat store {self.path} is not a JSON object")
        return data

    def _write(self, data: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")

    def records(self) -> List[ConversationRecord]:
        loaded = []
        for raw in self._read().get(STORE_KEY, []):
            try:
                loaded.append(ConversationRecord.from_dict(raw))
            except ConversationFormatError as e:
                logger.warning(f"Skipping unreadable saved chat in {self.path}: {e}")
        return loaded

    def add(self, record: ConversationRecord):
        data = self._read()
        data.setdefault(STORE_KEY, []).append(record.to_dict())
        self._write(data)
        logger.info(f"Saved chat {record.name!r} to {self.path}")

    def get(self, name: str) -> Optional[ConversationRecord]:
        """Returns the most recently saved record named `name`."""
        matches = [record for record in self.records() if record.name == name]
        return matches[-1] if matches else None

    def export(self, record: ConversationRecord, directory: Union[str, Path]) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / (_UNSAFE_NAME.sub("_", record.name) + ".json")
        target.write_text(record.to_json(), encoding="utf-8")
        logger.info(f"Exported chat {record.name!r} to {target}")
        return target

    def import_file(self, path: Union[str, Path]) -> ConversationRecord:
        return ConversationRecord.from_json(Path(path).read_text(encoding="utf-8"))
