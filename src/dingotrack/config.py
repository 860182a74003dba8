"""Configuration management for Dingo Track."""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Dingo Track config directory (shared with out-of-process readers)
DINGOTRACK_DIR = Path.home() / ".config" / "dingo-track"
DINGOTRACK_ENV_FILE = DINGOTRACK_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DINGOTRACK_",
        # Later files override earlier ones
        env_file=(str(DINGOTRACK_ENV_FILE), ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage settings
    data_dir: Path = Field(
        default=DINGOTRACK_DIR,
        description="Directory holding the JSON store files",
    )
    timers_store_name: str = Field(
        default="dingo-track-timers",
        description="Store name for timers, active timers and sessions",
    )
    auth_store_name: str = Field(
        default="dingo-track",
        description="Store name for Google tokens, calendars and the current user",
    )

    # Locking settings
    lock_backend: Literal["pid", "flock"] = Field(
        default="pid",
        description="Lock file backend: pid (lock file with PID liveness) or flock (OS-level)",
    )
    lock_retry_delay_ms: int = Field(
        default=50,
        description="Delay between lock acquisition attempts in milliseconds",
    )
    lock_max_attempts: int = Field(
        default=100,
        description="Maximum lock acquisition attempts before giving up",
    )

    # Timer settings
    autosave_interval_seconds: float = Field(
        default=30.0,
        description="Interval between periodic flushes of running timers",
    )
    session_limit: int = Field(
        default=100,
        description="Maximum number of timer sessions kept per user",
    )
    default_user_id: str | None = Field(
        default=None,
        description="User scope to use when no Google account is signed in",
    )

    # Google Calendar settings
    google_client_id: str = Field(
        default="",
        description="OAuth client ID for the Google Calendar API",
    )
    google_client_secret: str = Field(
        default="",
        description="OAuth client secret for the Google Calendar API",
    )
    google_redirect_uri: str = Field(
        default="http://127.0.0.1:8085/callback",
        description="Redirect URI registered for the OAuth client",
    )
    google_timezone: str | None = Field(
        default=None,
        description="IANA timezone sent with calendar events (default: local timezone)",
    )

    def get_store_path(self, name: str) -> Path:
        """Get the JSON file path for a named store."""
        return Path(self.data_dir).expanduser() / f"{name}.json"

    def has_google_credentials(self) -> bool:
        """Check whether OAuth client credentials are configured."""
        return bool(self.google_client_id and self.google_client_secret)


# Global settings instance
settings = Settings()
