"""Central configuration for the tender/CV orchestration service.

This module uses Pydantic Settings for validation and env management.
"""
from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# 4.5 MB, derived from the upstream request payload limit
DEFAULT_MAX_FILE_SIZE = int(4.5 * 1024 * 1024)

PDF_MIME = "application/pdf"
DOC_MIME = "application/msword"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class ServiceSettings(BaseSettings):
    """External extraction/matching service endpoints."""
    model_config = SettingsConfigDict(env_prefix="SERVICE_", extra="ignore")

    base_url: str = Field(default="http://localhost:8000", description="Base URL of the AI service")
    timeout_seconds: float | None = Field(
        default=None,
        ge=0.0,
        description="Per-request timeout; None waits indefinitely",
    )
    upload_multiple_path: str = Field(default="/upload-multiple-cvs")
    structured_parse_path: str = Field(default="/europass-parse")
    step1_path: str = Field(default="/profile-expert/step1")
    step2_path: str = Field(default="/profile-expert/step2")
    step3_path: str = Field(default="/profile-expert/step3")
    step4_path: str = Field(default="/profile-expert/step4")
    tender_path: str = Field(default="/upload-tender")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class AdmissionSettings(BaseSettings):
    """Pre-upload admission policy."""
    model_config = SettingsConfigDict(env_prefix="ADMISSION_", extra="ignore")

    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, ge=1, description="Size ceiling in bytes")
    allowed_mime_types: list[str] = Field(default_factory=lambda: [PDF_MIME, DOC_MIME, DOCX_MIME])
    allowed_extensions: list[str] = Field(default_factory=lambda: [".pdf", ".doc", ".docx"])


class MatchingSettings(BaseSettings):
    """Tender matching score configuration."""
    model_config = SettingsConfigDict(env_prefix="MATCHING_", extra="ignore")

    match_score_scale: float = Field(default=100.0, gt=0.0, description="Multiplier for full-list scores")
    curated_score_scale: float = Field(default=1.0, gt=0.0, description="Multiplier for curated scores")


class WorkflowSettings(BaseSettings):
    """Expert profile workflow configuration."""
    model_config = SettingsConfigDict(env_prefix="WORKFLOW_", extra="ignore")

    invalidate_downstream_on_redo: bool = Field(
        default=True,
        description="Clear outputs and flags of later stages when a stage is re-run",
    )


class ExportSettings(BaseSettings):
    """Result export configuration."""
    model_config = SettingsConfigDict(env_prefix="EXPORT_", extra="ignore")

    placeholder: str = Field(default="N/A")
    empty_training_topic: str = Field(default="No training data available")
    template_path: str | None = Field(default=None, description="Europass .docx template")
    date_format: str = Field(default="%d/%m/%Y")


class LoggingSettings(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Main application settings."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(default=Environment.DEVELOPMENT)
    debug: bool = Field(default=False)
    app_name: str = Field(default="Tenderflow")
    version: str = Field(default="0.1.0")

    # Sub-configs
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    admission: AdmissionSettings = Field(default_factory=AdmissionSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
