"""
Incremental decoding of newline-delimited JSON streams.

Transport chunks do not line up with JSON lines, nor with UTF-8 character
boundaries. Bytes pass through an incremental text decoder, then a line
buffer that only releases complete lines; the trailing partial line waits
for the next chunk.
"""
import codecs
from typing import List, Optional

from loguru import logger
from pydantic import ValidationError

from capsule_chat.models import StreamFragment


class LineBuffer:
    """Holds the unterminated tail of a text stream between reads."""

    def __init__(self):
        self._parts: List[str] = []

    @property
    def pending(self) -> str:
        return "".join(self._parts)

    def feed(self, text: str) -> List[str]:
        """Appends text and returns every line completed by it."""
        if "\n" not in text:
            if text:
                self._parts.append(text)
            return []
        # Only the new text is split; the held tail joins its first line.
        *complete, tail = text.split("\n")
        complete[0] = "".join(self._parts) + complete[0]
        self._parts = [tail] if tail else []
        return complete

    def flush(self) -> List[str]:
        """Releases the unterminated tail, if any, at end of stream."""
        tail, self._parts = "".join(self._parts), []
        return [tail] if tail else []


def parse_fragment(line: str) -> Optional[StreamFragment]:
    """Parses one line as a fragment, or returns None if it is not one."""
    try:
        return StreamFragment.model_validate_json(line)
    except ValidationError:
        return None


class FragmentDecoder:
    """
    Turns raw stream bytes into StreamFragments.

    Blank lines are skipped. Lines that do not parse are dropped and counted
    in `dropped_lines` rather than aborting the stream.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._text = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._lines = LineBuffer()
        self.fragments = 0
        self.dropped_lines = 0

    def feed(self, data: bytes) -> List[StreamFragment]:
        return self._parse(self._lines.feed(self._text.decode(data)))

    def close(self) -> List[StreamFragment]:
        """Flushes the decoder and parses whatever tail is left."""
        lines = self._lines.feed(self._text.decode(b"", final=True))
        return self._parse(lines + self._lines.flush())

    def _parse(self, lines: List[str]) -> List[StreamFragment]:
        parsed = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            fragment = parse_fragment(line)
            if fragment is None:
                self.dropped_lines += 1
                logger.debug(f"Dropped malformed stream line: {line[:200]!r}")
                continue
            self.fragments += 1
            parsed.append(fragment)
        return parsed
