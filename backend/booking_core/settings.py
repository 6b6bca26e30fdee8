from datetime import timedelta
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "booking-core"
    app_env: Literal["dev", "prod"] = Field("prod")
    testing: bool = Field(False)
    log_level: str = Field("INFO")

    database_url: str = Field("sqlite+aiosqlite:///./booking_core.db")
    database_pool_size: int = Field(5)
    database_max_overflow: int = Field(5)
    database_pool_timeout_seconds: float = Field(30.0)
    database_statement_timeout_ms: int = Field(5000)

    local_timezone: str = Field("Asia/Dhaka")
    min_lead_time_minutes: int = Field(120)
    assumed_request_duration_minutes: int = Field(60)

    auto_cancel_timeout_hours: float = Field(12)
    auto_cancel_interval_seconds: float = Field(300)
    auto_cancel_batch_size: int = Field(200)
    strike_window_days: int = Field(7)
    strike_threshold: int = Field(3)
    service_block_duration_hours: float = Field(48)
    service_unblock_interval_seconds: float = Field(900)
    sweepers_enabled: bool = Field(False)

    notification_mode: Literal["off", "log", "webhook"] = Field("log")
    notification_webhook_url: str | None = Field(None)
    notification_webhook_timeout_seconds: float = Field(5.0)

    metrics_enabled: bool = Field(True)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("local_timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        ZoneInfo(value)
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.local_timezone)

    @property
    def min_lead_time(self) -> timedelta:
        return timedelta(minutes=self.min_lead_time_minutes)

    @property
    def assumed_request_duration(self) -> timedelta:
        return timedelta(minutes=self.assumed_request_duration_minutes)

    @property
    def auto_cancel_timeout(self) -> timedelta:
        return timedelta(hours=self.auto_cancel_timeout_hours)

    @property
    def strike_window(self) -> timedelta:
        return timedelta(days=self.strike_window_days)

    @property
    def service_block_duration(self) -> timedelta:
        return timedelta(hours=self.service_block_duration_hours)


settings = Settings()
