import asyncio
import re
from enum import Enum
from typing import List, Optional, Protocol

from loguru import logger

from config import settings

_MARKUP = re.compile(r"[*_#`~>|\[\]{}<]+")
_WHITESPACE = re.compile(r"\s+")


def strip_markup(text: str) -> str:
    """Removes structural markup characters so they are not read aloud."""
    return _WHITESPACE.sub(" ", _MARKUP.sub(" ", text)).strip()


class SpeechState(str, Enum):
    IDLE = "idle"
    SPEAKING = "speaking"


class SpeechEngine(Protocol):
    async def say(self, text: str) -> None:
        """Speaks `text`, returning when the utterance ends. Cancellation must stop it."""


class SubprocessSpeechEngine:
    """Speaks through an external synthesizer such as espeak or piper."""

    def __init__(self, command: Optional[List[str]] = None):
        self.command = list(command or settings.SPEECH_COMMAND)

    async def say(self, text: str) -> None:
        process = await asyncio.create_subprocess_exec(
            *self.command, text,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        if process.returncode != 0:
            raise RuntimeError(
                f"{self.command[0]} exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
            )


class Speaker:
    """
    Single-flight text-to-speech.

    Idle --speak--> Speaking --finish|error|stop--> Idle. Calling speak while
    Speaking is ignored; stop cancels the active utterance.
    """

    def __init__(self, engine: Optional[SpeechEngine] = None):
        self.engine = engine or SubprocessSpeechEngine()
        self.state = SpeechState.IDLE
        self._utterance: Optional[asyncio.Task] = None

    @property
    def is_speaking(self) -> bool:
        return self.state is SpeechState.SPEAKING

    def speak(self, text: str) -> bool:
        """Starts speaking `text`. Returns False if nothing was started."""
        if self.is_speaking:
            logger.debug("Already speaking; ignoring new utterance")
            return False
        cleaned = strip_markup(text)
        if not cleaned:
            return False
        self.state = SpeechState.SPEAKING
        self._utterance = asyncio.create_task(self._run(cleaned))
        return True

    async def _run(self, text: str):
        try:
            await self.engine.say(text)
        except asyncio.CancelledError:
            logger.debug("Utterance cancelled")
            raise
        except Exception as e:
            logger.error(f"Speech synthesis failed: {e}")
        finally:
            if self._utterance is asyncio.current_task():
                self.state = SpeechState.IDLE
                self._utterance = None

    def stop(self) -> bool:
        """Cancels the active utterance. Returns False if nothing was playing."""
        if not self.is_speaking:
            return False
        utterance, self._utterance = self._utterance, None
        self.state = SpeechState.IDLE
        if utterance is not None:
            utterance.cancel()
        return True

    async def wait(self):
        """Waits for the current utterance, if any, to finish."""
        utterance = self._utterance
        if utterance is not None:
            await asyncio.gather(utterance, return_exceptions=True)
