# config.py

from typing import List, Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """
    Application configuration settings.
    Settings are loaded from the .env file, with sensible defaults provided here.
    """
    # --- Upstream Model Runtime (Ollama) ---
    OLLAMA_URL: str = "http://localhost:11434"
    UPSTREAM_CONNECT_TIMEOUT: float = 10.0
    UPSTREAM_READ_TIMEOUT: Optional[float] = 300.0  # Max silence between upstream chunks. None waits forever.

    # --- Relay Server Settings ---
    HOST: str = "localhost"
    PORT: int = 3000
    WORKERS: int = 1

    # --- Logging Settings ---
    LOG_FILE: str = "logs/app.log"
    LOG_LEVEL: str = "INFO"
    LOG_ROTATION: str = "1 day"

    # --- Upload Storage ---
    UPLOAD_DIR: str = "uploads"
    UPLOAD_MAX_BYTES: int = 50 * 1024 * 1024
    UPLOAD_PURGE_INTERVAL_HOURS: float = 24.0  # 0 disables the in-process purge loop.

    # ===================================================================
    # --- Chat Client Settings ---
    # Used by the terminal client that talks to the relay. The timeouts
    # bound how long a single turn may wait on a silent or endless stream.
    # ===================================================================
    RELAY_URL: str = "http://localhost:3000"
    DEFAULT_MODEL: str = "llama3.2:3b"
    AVAILABLE_MODELS: List[str] = [
        "deepseek-r1:1.5b",
        "qwen2.5:3b",
        "gemma2:2b",
        "llama3.2:3b",
        "mistral:7b",
        "llama3.2-vision:11b",
    ]
    CLIENT_CONNECT_TIMEOUT: float = 10.0
    CLIENT_READ_TIMEOUT: float = 120.0
    CLIENT_TOTAL_TIMEOUT: Optional[float] = None
    CHAT_STORE_FILE: str = "data/saved_chats.json"

    # --- Speech ---
    # The text to speak is appended as the final argument.
    SPEECH_COMMAND: List[str] = ["espeak", "-s", "140"]

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'

settings = Settings()
