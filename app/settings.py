from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ingest.fetch import is_absolute_url
from ingest.models import MsgType


NWS_NATIONAL_ATOM_FEED = "https://alerts.weather.gov/cap/us.php?x=1"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    feed_url: str = Field(default=NWS_NATIONAL_ATOM_FEED, validation_alias="FEED_URL")
    poll_interval_seconds: float = Field(
        default=60.0, gt=0, validation_alias="POLL_INTERVAL_SECONDS"
    )
    request_timeout_seconds: float = Field(
        default=10.0, gt=0, validation_alias="REQUEST_TIMEOUT_SECONDS"
    )
    max_concurrency: int = Field(default=8, ge=1, validation_alias="MAX_CONCURRENCY")
    dedup_retention_days: float = Field(
        default=7.0, gt=0, validation_alias="DEDUP_RETENTION_DAYS"
    )

    msg_type_filter: MsgType | None = Field(
        default=None, validation_alias="MSG_TYPE_FILTER"
    )
    event_filter: str | None = Field(default=None, validation_alias="EVENT_FILTER")

    user_agent: str = Field(default="cap-ingest/0.1", validation_alias="USER_AGENT")
    db_path: Path | None = Field(default=None, validation_alias="DB_PATH")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @field_validator("feed_url")
    @classmethod
    def _check_feed_url(cls, value: str) -> str:
        value = value.strip()
        if not is_absolute_url(value):
            raise ValueError(f"FEED_URL must be an absolute http(s) url, got {value!r}")
        return value

    @field_validator("msg_type_filter", mode="before")
    @classmethod
    def _normalize_msg_type(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            for msg_type in MsgType:
                if msg_type.value.lower() == value.lower():
                    return msg_type
        return value

    @field_validator("event_filter", mode="before")
    @classmethod
    def _blank_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown LOG_LEVEL {value!r}")
        return value

    @property
    def dedup_retention(self) -> timedelta:
        return timedelta(days=self.dedup_retention_days)
