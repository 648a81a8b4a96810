"""Application settings and lazy settings loader."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration.

    Every field can be overridden through the environment; `.env` is read when present.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "env.example"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = True

    # Credential for the Gemini API. May also be supplied at runtime (PUT /v1/credentials).
    GOOGLE_API_KEY: str | None = None

    # Conversation store. Without it the API keeps conversations in process memory only.
    MONGODB_URL: str | None = None

    DISPATCHER_MODEL: str = "gemini-2.5-pro"
    CHAT_MODEL: str = "gemini-2.5-flash"
    TITLE_MODEL: str = "gemini-2.5-flash"
    IMAGE_GEN_MODEL: str = "imagen-4.0-generate-001"
    IMAGE_EDIT_MODEL: str = "gemini-2.5-flash-image"
    VIDEO_GEN_MODEL: str = "veo-3.1-fast-generate-preview"
    TTS_MODEL: str = "gemini-2.5-flash-preview-tts"

    IMAGE_ASPECT_RATIO: str = "1:1"
    VIDEO_RESOLUTION: str = "720p"
    VIDEO_ASPECT_RATIO: str = "16:9"

    # Long-running video operations: poll interval and attempt cap (0 = wait forever).
    VIDEO_POLL_INTERVAL_S: float = 10.0
    VIDEO_MAX_POLLS: int = 60

    TTS_SAMPLE_RATE: int = 24000
    TTS_CHANNELS: int = 1

    HTTP_TIMEOUT_S: float = 120.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance (lazy-loaded)."""
    return Settings()
