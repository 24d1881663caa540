"""Runtime configuration loaded from the environment and an optional .env file."""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for extraction, storage and the Google integrations."""

    # Anthropic extraction
    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "METERLEDGER_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"
        ),
    )
    extraction_model: str = "claude-haiku-4-5"
    extraction_max_tokens: int = 2048
    extraction_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Per-document deadline for the extraction call",
    )

    # Run store
    data_dir: Path = Path("data")
    max_runs: int = Field(default=10, ge=1)

    # Google Drive / Sheets
    google_drive_folder_id: str | None = None
    google_sheets_id: str | None = None
    workers: int = Field(default=4, ge=1)

    # Analysis
    anomaly_threshold: float = Field(default=2.5, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="METERLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value

    @property
    def runs_path(self) -> Path:
        return self.data_dir / "extractions.json"


def get_settings() -> Settings:
    return Settings()
