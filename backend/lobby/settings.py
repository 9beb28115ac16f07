"""Room client configuration via environment variables."""

from pathlib import Path
from typing import Self

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class RoomSettings(BaseSettings):
    model_config = {"env_prefix": "ROOMS_"}

    rooms_root: str = Field(default="rooms", min_length=1)

    # Slot assignment: bounded attempts with a fixed delay between them.
    join_max_attempts: int = Field(default=3, ge=1)
    join_retry_delay_seconds: float = Field(default=0.5, ge=0)
    transaction_max_reruns: int = Field(default=25, ge=1)

    auth_timeout_seconds: float = Field(default=10.0, gt=0)

    turn_duration_seconds: float = Field(default=60.0, gt=0)
    turn_sync_interval_seconds: float = Field(default=2.0, gt=0)

    # Hosted store. Unset runs against an in-process registry.
    database_url: str | None = None
    api_key: str | None = None
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    # Local association file for resuming a room after restart. Unset keeps it in memory.
    association_path: Path | None = None
    log_dir: str | None = None

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str | None) -> str | None:
        if v is None:
            return None
        stripped = v.strip().rstrip("/")
        if not stripped:
            return None
        if not stripped.startswith(("https://", "http://")):
            raise ValueError("database_url must be an http(s) URL")
        return stripped

    @model_validator(mode="after")
    def _require_api_key_with_database(self) -> Self:
        if self.database_url and not self.api_key:
            raise ValueError("api_key is required when database_url is set")
        return self
