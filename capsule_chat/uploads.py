import asyncio
import re
import uuid
from pathlib import Path
from typing import Union

from loguru import logger

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    """Reduces a client-supplied name to a bare, filesystem-safe file name."""
    name = Path(filename or "").name
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "upload"


def store_upload(directory: Union[str, Path], filename: str, data: bytes) -> Path:
    """
    Writes an uploaded file under `directory` and returns its path.
    A random prefix keeps concurrent uploads with the same name apart.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{uuid.uuid4().hex[:12]}-{safe_filename(filename)}"
    target.write_bytes(data)
    logger.info(f"Stored upload {filename!r} as {target} ({len(data)} bytes)")
    return target


def purge_uploads(directory: Union[str, Path]) -> int:
    """
    Deletes every regular file in the upload directory.

    Returns the number of files removed. A file that cannot be deleted is
    logged and skipped; a missing directory means there is nothing to do.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.info(f"Uploads directory {directory} does not exist. Nothing to clean up.")
        return 0

    deleted = 0
    for path in sorted(directory.iterdir()):
        if not path.is_file():
            continue
        try:
            path.unlink()
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
            continue
        deleted += 1
        logger.debug(f"Deleted: {path}")

    logger.info(f"Cleanup completed. Deleted {deleted} files.")
    return deleted


async def purge_periodically(directory: Union[str, Path], interval_hours: float):
    """Runs purge_uploads every `interval_hours` until cancelled."""
    while True:
        await asyncio.sleep(interval_hours * 3600)
        await asyncio.to_thread(purge_uploads, directory)
