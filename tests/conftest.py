import os

# Settings are read once at import time; keep test runs from writing log files.
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("UPLOAD_PURGE_INTERVAL_HOURS", "0")

import pytest

from config import settings


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    directory = tmp_path / "uploads"
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(directory))
    return directory
