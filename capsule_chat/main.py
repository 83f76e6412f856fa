from fastapi import Depends, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from contextlib import asynccontextmanager
from typing import Optional
from loguru import logger
import asyncio
import contextlib

from capsule_chat.logging_config import setup_logging
from capsule_chat.ollama_client import OllamaClient, UpstreamError
from capsule_chat.models import (
    ErrorResponse,
    GenerationRequest,
    HealthResponse,
    SearchResponse,
    SshResponse,
    UploadResponse,
    VisionResponse,
)
from capsule_chat.uploads import purge_periodically, store_upload
from config import settings

# Setup logging as the very first step
setup_logging()

# Shared resources for the process: the upstream client and the purge task.
app_state = {}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup: creates the shared upstream client and, if configured, the
    periodic upload purge.
    On shutdown: stops the purge and closes the upstream connection pool.
    """
    logger.info("Application startup sequence initiated...")
    client = await OllamaClient.get_instance()
    app_state["ollama_client"] = client
    purge_task = None
    if settings.UPLOAD_PURGE_INTERVAL_HOURS > 0:
        purge_task = asyncio.create_task(
            purge_periodically(settings.UPLOAD_DIR, settings.UPLOAD_PURGE_INTERVAL_HOURS)
        )
    yield
    logger.info("Application shutdown sequence initiated...")
    if purge_task is not None:
        purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purge_task
    await client.close()
    app_state.clear()


app = FastAPI(
    title="Capsule Chat Relay",
    description="Relays chat prompts to a local Ollama runtime and streams the tokens back.",
    version="1.0.0",
    lifespan=lifespan
)


def get_upstream_client() -> OllamaClient:
    return app_state["ollama_client"]


def _upstream_failure(e: UpstreamError) -> JSONResponse:
    payload = ErrorResponse(
        error="Failed to connect to AI model",
        message=str(e),
        suggestion="Make sure Ollama is running and the model is downloaded",
    )
    return JSONResponse(status_code=500, content=payload.model_dump())


@app.get("/api/health", response_model=HealthResponse, tags=["Monitoring"])
async def health_check():
    """Simple health check endpoint to confirm the relay is running."""
    return HealthResponse(status="OK", message="Capsule Backend is running")


@app.post("/api/chat", tags=["Chat"])
async def chat(request: GenerationRequest, client: OllamaClient = Depends(get_upstream_client)):
    """
    Forwards {model, prompt, stream} to the model runtime.

    With stream=true the upstream NDJSON bytes are piped through as they
    arrive. With stream=false the complete upstream JSON document is returned.
    Upstream failures become a 500 with an explanatory error payload.
    """
    logger.info(f"Received chat request {request.request_id} (model={request.model}, stream={request.stream})")

    if not request.stream:
        try:
            data = await client.generate(request)
        except UpstreamError as e:
            return _upstream_failure(e)
        logger.info(f"Completed non-streaming request: {request.request_id}")
        return JSONResponse(content=data)

    try:
        upstream = await client.open_stream(request)
    except UpstreamError as e:
        return _upstream_failure(e)

    return StreamingResponse(
        client.iter_stream(upstream, request.request_id),
        media_type="application/json",
    )


@app.get("/api/search", response_model=SearchResponse, tags=["Tools"])
async def search(q: Optional[str] = None):
    """Placeholder: no search provider is wired in."""
    return SearchResponse(
        results=[f'Search functionality for "{q or ""}" would be implemented here'],
        note="This is a placeholder endpoint. Integrate with a search API for full functionality.",
    )


@app.post("/api/ssh", response_model=SshResponse, tags=["Tools"])
async def ssh():
    return SshResponse(
        warning="SSH functionality is disabled by default for security reasons",
        note="Enable and configure SSH credentials in production with proper security measures",
    )


@app.post("/api/vision", response_model=VisionResponse, tags=["Tools"])
async def vision():
    return VisionResponse(
        note="Vision functionality requires a vision-capable model like llama3.2-vision",
        suggestion="Use the llama3.2-vision:11b model for image processing",
    )


@app.post("/api/upload", response_model=UploadResponse, tags=["Uploads"])
async def upload(file: UploadFile = File(...)):
    """Stores an uploaded image or video until the next purge."""
    data = await file.read(settings.UPLOAD_MAX_BYTES + 1)
    if len(data) > settings.UPLOAD_MAX_BYTES:
        logger.warning(f"Rejected upload {file.filename!r}: larger than {settings.UPLOAD_MAX_BYTES} bytes")
        raise HTTPException(status_code=413, detail="Uploaded file is too large")

    path = await asyncio.to_thread(store_upload, settings.UPLOAD_DIR, file.filename or "", data)
    return UploadResponse(
        filename=file.filename or "",
        stored_as=path.name,
        content_type=file.content_type,
        size=len(data),
    )
