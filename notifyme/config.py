"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Variables are prefixed with ``NOTIFYME_`` (e.g. ``NOTIFYME_BACKEND_BASE_URL``).
    """

    # --- App ---
    app_name: str = "NotifyMe"
    app_version: str = "0.1.0"
    debug: bool = False  # forces DEBUG logging
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Backend ---
    backend_base_url: str = "https://notify-me-dev.example.org/v1"
    http_timeout_seconds: float = 30.0

    # --- Local state ---
    state_path: Path = Path("notifyme_state.json")

    model_config = SettingsConfigDict(
        env_prefix="NOTIFYME_", env_file=".env", env_file_encoding="utf-8"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
