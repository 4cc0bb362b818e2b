"""Pipeline runtime settings.

Automatically reads from environment variables (or a .env file).

Environment variables:
  PIPELINE_STAGE_TIMEOUT_S        — per-stage time limit in seconds (default: 120)
  PIPELINE_COMPLETION_RETRIES     — extra attempts on transient completion errors (default: 1)
  PIPELINE_RETRY_BACKOFF_S        — base backoff before a retry; doubles per attempt (default: 1.0)
  PIPELINE_ADVISORY_VALIDATION    — run the collaborator refinement pass in validation (default: true)
  PIPELINE_STREAM_STRUCTURE       — stream structure synthesis chunks to the caller (default: true)
  PIPELINE_CATALOGUE_PATH         — capability catalogue JSON; unset = bundled snapshot
  PIPELINE_LOG_LEVEL              — root log level for the CLI and API (default: INFO)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    stage_timeout_s: float = Field(default=120.0, validation_alias="PIPELINE_STAGE_TIMEOUT_S")
    completion_retries: int = Field(default=1, validation_alias="PIPELINE_COMPLETION_RETRIES")
    retry_backoff_s: float = Field(default=1.0, validation_alias="PIPELINE_RETRY_BACKOFF_S")
    advisory_validation: bool = Field(default=True, validation_alias="PIPELINE_ADVISORY_VALIDATION")
    stream_structure: bool = Field(default=True, validation_alias="PIPELINE_STREAM_STRUCTURE")
    catalogue_path: Path | None = Field(default=None, validation_alias="PIPELINE_CATALOGUE_PATH")
    log_level: str = Field(default="INFO", validation_alias="PIPELINE_LOG_LEVEL")

    @field_validator("completion_retries")
    @classmethod
    def non_negative_retries(cls, v: int) -> int:
        return max(0, v)

    @field_validator("stage_timeout_s")
    @classmethod
    def positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("PIPELINE_STAGE_TIMEOUT_S must be positive")
        return v

    @field_validator("catalogue_path", mode="before")
    @classmethod
    def empty_path_to_none(cls, v: object) -> object:
        return v or None

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_level(cls, v: object) -> str:
        return str(v).upper()
