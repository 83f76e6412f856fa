import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx
from loguru import logger

from config import settings
from capsule_chat.fragments import FragmentDecoder
from capsule_chat.models import GenerationRequest, StreamFragment

BACKEND_UNREACHABLE = "(Backend not reachable)"
NO_RESPONSE = "(No response)"

CHAT_PATH = "/api/chat"


@dataclass
class StreamStats:
    """Diagnostics for the most recent turn."""
    fragments: int = 0
    dropped_lines: int = 0
    done_seen: bool = False
    error: Optional[str] = None


class StreamConsumer:
    """
    Client side of /api/chat: streams a reply and accumulates its text.

    get_response never raises for transport or protocol problems. It returns
    the reply text, NO_RESPONSE when the stream carried no text, or
    BACKEND_UNREACHABLE when the relay could not be used at all.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        total_timeout: Optional[float] = None,
    ):
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=base_url or settings.RELAY_URL,
            timeout=httpx.Timeout(
                settings.CLIENT_READ_TIMEOUT,
                connect=settings.CLIENT_CONNECT_TIMEOUT,
            ),
        )
        self.total_timeout = total_timeout if total_timeout is not None else settings.CLIENT_TOTAL_TIMEOUT
        self.last_stats = StreamStats()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def get_response(
        self,
        prompt: str,
        model: str,
        on_text: Optional[Callable[[str], None]] = None,
        on_typing: Optional[Callable[[bool], None]] = None,
    ) -> str:
        request = GenerationRequest(model=model, prompt=prompt, stream=True)
        stats = StreamStats()
        self.last_stats = stats
        accumulator: List[str] = []

        def set_typing(active: bool):
            if on_typing is not None:
                on_typing(active)

        try:
            consume = self._consume(request, accumulator, stats, on_text, set_typing)
            if self.total_timeout:
                reached = await asyncio.wait_for(consume, self.total_timeout)
            else:
                reached = await consume
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            stats.error = str(e) or type(e).__name__
            if accumulator:
                logger.warning(f"Stream for {request.request_id} ended early, keeping partial text: {stats.error}")
            else:
                logger.error(f"Relay not reachable for {request.request_id}: {stats.error}")
                return BACKEND_UNREACHABLE
        else:
            if not reached:
                return BACKEND_UNREACHABLE
        finally:
            set_typing(False)

        if stats.dropped_lines:
            logger.info(f"Dropped {stats.dropped_lines} malformed line(s) in {request.request_id}")
        if not accumulator and stats.error:
            # The relay broke off before any text arrived
            return BACKEND_UNREACHABLE
        return "".join(accumulator) or NO_RESPONSE

    async def _consume(self, request, accumulator, stats, on_text, set_typing) -> bool:
        """Runs the read loop. Returns False if the relay answered with a failure."""
        decoder = FragmentDecoder()
        async with self.client.stream("POST", CHAT_PATH, json=request.upstream_payload()) as response:
            if response.is_error:
                await response.aread()
                logger.error(f"Relay returned {response.status_code} for {request.request_id}: {response.text}")
                return False

            set_typing(True)
            try:
                async for chunk in response.aiter_bytes():
                    for fragment in decoder.feed(chunk):
                        self._apply(fragment, accumulator, stats, on_text)
                for fragment in decoder.close():
                    self._apply(fragment, accumulator, stats, on_text)
            finally:
                stats.fragments = decoder.fragments
                stats.dropped_lines = decoder.dropped_lines
        return True

    def _apply(self, fragment: StreamFragment, accumulator, stats, on_text):
        if fragment.error:
            stats.error = fragment.error
            logger.warning(f"Relay reported a stream error: {fragment.error}")
        if fragment.done:
            stats.done_seen = True
        if fragment.response:
            accumulator.append(fragment.response)
            if on_text is not None:
                on_text("".join(accumulator))
