import asyncio
import json
from typing import AsyncIterator, Optional

import httpx
from loguru import logger

from config import settings
from capsule_chat.models import GenerationRequest


class UpstreamError(Exception):
    """Raised when the model runtime is unreachable or answers with a failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OllamaClient:
    """
    An asynchronous client for the Ollama generation endpoint.

    The relay shares one instance per process (see get_instance) so every
    proxied call reuses the same connection pool. Requests are otherwise
    independent; the client holds no per-request state.
    """
    _instance = None
    _lock = asyncio.Lock()

    GENERATE_PATH = "/api/generate"

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=httpx.Timeout(
                settings.UPSTREAM_READ_TIMEOUT,
                connect=settings.UPSTREAM_CONNECT_TIMEOUT,
            ),
        )

    @classmethod
    async def get_instance(cls):
        """Get the shared instance of the client, creating it if necessary."""
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(settings.OLLAMA_URL)
                    await cls._instance._check_reachable()
        return cls._instance

    async def _check_reachable(self):
        """Logs whether the runtime answers. The relay starts either way."""
        try:
            response = await self.client.get("/")
            logger.info(f"Model runtime at {self.base_url} answered with {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Model runtime at {self.base_url} is not reachable yet: {e}")

    async def open_stream(self, params: GenerationRequest) -> httpx.Response:
        """
        Sends the request upstream and returns the response with its body unread.
        The caller must drain it through iter_stream, which closes it.
        """
        request = self.client.build_request("POST", self.GENERATE_PATH, json=params.upstream_payload())
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Upstream unreachable for request {params.request_id}: {e}")
            raise UpstreamError(str(e) or type(e).__name__) from e

        if response.is_error:
            await response.aread()
            await response.aclose()
            logger.error(
                f"Upstream returned {response.status_code} for request {params.request_id}: {response.text}"
            )
            raise UpstreamError(f"Ollama API error: {response.status_code}", response.status_code)
        return response

    async def iter_stream(self, response: httpx.Response, request_id: str) -> AsyncIterator[bytes]:
        """
        Yields upstream bytes exactly as they arrive.

        If the upstream connection breaks mid-stream, a final NDJSON error
        object is emitted on its own line so the caller never mistakes a
        truncated stream for a complete one.
        """
        at_line_start = True
        try:
            async for chunk in response.aiter_raw():
                if not chunk:
                    continue
                at_line_start = chunk.endswith(b"\n")
                yield chunk
            logger.info(f"Stream completed for request: {request_id}")
        except httpx.HTTPError as e:
            logger.error(f"Upstream stream broke for request {request_id}: {e}")
            error_line = json.dumps({"error": f"Upstream stream interrupted: {e}", "done": True})
            yield (b"" if at_line_start else b"\n") + error_line.encode("utf-8") + b"\n"
        except asyncio.CancelledError:
            # The relay's caller went away before the stream finished.
            logger.warning(f"Client disconnected for request: {request_id}")
            raise
        finally:
            await response.aclose()

    async def generate(self, params: GenerationRequest) -> dict:
        """Non-streaming generation: waits for the whole upstream document."""
        try:
            response = await self.client.post(self.GENERATE_PATH, json=params.upstream_payload())
        except httpx.HTTPError as e:
            logger.error(f"Upstream unreachable for request {params.request_id}: {e}")
            raise UpstreamError(str(e) or type(e).__name__) from e

        if response.is_error:
            logger.error(
                f"Upstream returned {response.status_code} for request {params.request_id}: {response.text}"
            )
            raise UpstreamError(f"Ollama API error: {response.status_code}", response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(f"Upstream returned invalid JSON: {e}") from e

    async def close(self):
        """Gracefully closes the connection pool."""
        await self.client.aclose()
        logger.info("Upstream client connection closed.")
