import sys
from typing import Optional

from loguru import logger
from config import settings

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

_configured = False


def setup_logging(level: Optional[str] = None, console: bool = True):
    """
    Configures Loguru for the relay and the chat client.

    The console sink is optional so the interactive client can keep the
    terminal clean and log only to the rotating file.
    """
    global _configured
    level = (level or settings.LOG_LEVEL).upper()
    logger.remove()  # Remove default handler to avoid duplicate logs

    if console:
        logger.add(sys.stdout, level=level, format=_CONSOLE_FORMAT)

    if settings.LOG_FILE:
        # Daily rotation; enqueue keeps logging off the event loop
        logger.add(
            settings.LOG_FILE,
            rotation=settings.LOG_ROTATION,
            retention="10 days",
            compression="zip",
            level=level,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    if not _configured:
        logger.info("Logger configured successfully.")
    _configured = True
