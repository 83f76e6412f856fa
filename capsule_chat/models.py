# capsule_chat/models.py

from pydantic import BaseModel, ConfigDict, Field, field_validator
import uuid
from typing import List, Optional
from config import settings # Import the single source of truth

class GenerationRequest(BaseModel):
    """
    One generation turn as accepted by /api/chat and forwarded upstream.
    Only model, prompt and stream are sent to the model runtime.
    """
    model: str = Field(
        default=settings.DEFAULT_MODEL,
        min_length=1,
        description="Model identifier known to the upstream runtime, e.g. 'llama3.2:3b'."
    )
    prompt: str = Field(
        ...,
        description="The user's prompt text."
    )
    stream: bool = Field(
        default=True,
        description="If true, the response is streamed back as newline-delimited JSON."
    )
    request_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Identifier used in logs only. Never forwarded upstream."
    )

    def upstream_payload(self) -> dict:
        """The exact body sent to the upstream generation endpoint."""
        return self.model_dump(include={"model", "prompt", "stream"})


class StreamFragment(BaseModel):
    """
    One line of the upstream NDJSON stream. Unknown fields are kept and ignored.
    A wrong-typed `done` or `error` never costs the line its text.
    """
    model_config = ConfigDict(extra="allow")

    response: Optional[str] = None
    done: bool = False
    error: Optional[str] = None

    @field_validator("done", mode="before")
    @classmethod
    def _strict_done(cls, v):
        # Only a literal true ends the stream; anything else keeps reading.
        return v if isinstance(v, bool) else False

    @field_validator("error", mode="before")
    @classmethod
    def _error_text(cls, v):
        if v is None or isinstance(v, str):
            return v
        return str(v)


class ErrorResponse(BaseModel):
    """Synchronous failure payload returned by the relay."""
    error: str
    message: str
    suggestion: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    message: str


class SearchResponse(BaseModel):
    results: List[str]
    note: str


class SshResponse(BaseModel):
    warning: str
    note: str


class VisionResponse(BaseModel):
    note: str
    suggestion: str


class UploadResponse(BaseModel):
    """Describes a file stored by /api/upload."""
    filename: str
    stored_as: str
    content_type: Optional[str] = None
    size: int
