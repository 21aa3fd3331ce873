"""pairlink service configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the session broker."""

    # Storage roots: tokens/, credentials/ and profiles/ live under data_dir
    data_dir: Path = Path("./data")

    # Linking lifecycle (seconds)
    linking_timeout_seconds: float = 120.0
    linking_code_ttl_seconds: float = 300.0
    qr_ttl_seconds: float = 60.0
    failed_grace_seconds: float = 60.0
    release_grace_seconds: float = 2.0

    # Reaper
    session_retention_seconds: float = 4 * 60 * 60
    reaper_interval_seconds: float = 60 * 60

    # Backend adapter
    backend_factory: str = "pairlink.backends.webclient:create_backend"
    browser_executable_path: str = ""
    headless: bool = True
    send_confirmation: bool = True
    server_context: dict[str, Any] = {"environment": "development"}

    # HTTP
    host: str = "0.0.0.0"
    port: int = 3000
    cors_origins: list[str] = ["http://localhost:3000"]
    rate_limit_connect: str = "10/minute"
    api_key: str = ""

    log_level: str = "INFO"

    model_config = {"env_prefix": "PAIRLINK_", "env_file": ".env", "extra": "ignore"}

    @property
    def profiles_dir(self) -> Path:
        return self.data_dir / "profiles"


def get_settings() -> Settings:
    return Settings()
