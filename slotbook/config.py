from functools import lru_cache
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = Field(default="Slotbook Scheduling Service")
    cors_origins: List[AnyHttpUrl] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )
    timezone: str = Field(
        default="UTC"
    )
    slot_interval_minutes: int = Field(
        default=15, gt=0
    )
    lookahead_minutes: int = Field(
        default=15, ge=0
    )
    buffer_minutes: int = Field(
        default=0, ge=0
    )
    booking_lock_timeout: float = Field(
        default=2.0, gt=0
    )
    booking_max_attempts: int = Field(
        default=3, ge=1
    )
    default_waitlist_duration_minutes: int = Field(
        default=30, gt=0
    )
    waiting_list_reset_hour: int = Field(
        default=6, ge=0, le=23
    )
    waiting_list_keep_expired: bool = Field(
        default=False
    )
    use_mock_data: bool = Field(
        default=True
    )
    sms_gateway_base_url: AnyHttpUrl | None = Field(
        default=None
    )
    sms_gateway_token: str | None = Field(
        default=None
    )
    sms_gateway_timeout: float = Field(
        default=10.0
    )

    model_config = SettingsConfigDict(env_prefix="SLOTBOOK_", case_sensitive=False)

    @field_validator("cors_origins", mode="before")
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("timezone")
    def _known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:
            raise ValueError(f"Unknown timezone {value!r}") from exc
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
