"""Configuration management for careslot."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./careslot.db",
        description="SQLAlchemy async DSN for the scheduling store",
    )

    # Slot generation
    default_slot_granularity_minutes: int = Field(
        default=30,
        gt=0,
        description="Step between candidate start times when a provider sets none",
    )
    default_appointment_minutes: int = Field(
        default=30,
        gt=0,
        description="Appointment length used for waitlist entries without one",
    )

    # Waitlist
    waitlist_lookahead_days: int = Field(
        default=14,
        gt=0,
        description="How far ahead waitlist slot searches look by default",
    )
    waitlist_offer_ttl_minutes: Optional[int] = Field(
        default=None,
        description="Minutes before a notified offer lapses; unset disables lapsing",
    )

    # Event log
    event_log_enabled: bool = Field(default=True)
    event_log_dir: Path = Field(
        default=Path("./data/events"),
        description="Directory for scheduling event JSONL files",
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_key: str = Field(
        default="",
        description="API key for authenticating requests",
    )

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins",
    )

    # Debug
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (exposes error details in responses)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @property
    def offer_lapsing_enabled(self) -> bool:
        """Check if notified offers lapse automatically."""
        return self.waitlist_offer_ttl_minutes is not None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
