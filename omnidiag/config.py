from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from typing import Optional
import logging

from omnidiag.core.alerts import parse_threshold
from omnidiag.core.errors import MissingCredentialError


class Settings(BaseSettings):
    """
    Configuration for the OmniDiag assistant.
    Values come from the environment or a local .env file.
    """
    google_cloud_project: Optional[str] = Field(default=None)
    google_cloud_location: str = Field(default="us-central1")

    # Model selection
    diagnostic_model: str = "gemini-2.5-flash"
    chat_model: str = "gemini-2.5-flash"
    transcription_model: str = "gemini-2.5-flash"
    diagnostic_temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    # Alerting: a severity name, or None for disabled
    alert_threshold: Optional[str] = Field(default=None)

    # Prompt overrides (JSON map role -> prompt)
    prompts_path: str = Field(default="prompts.json")

    # Speech capture (energy gate, milliseconds / dBFS / seconds)
    speech_language: str = "en-US"
    speech_energy_calibration_ms: int = 1200
    speech_energy_floor_dbfs: float = -60.0
    speech_energy_offset_db: float = 12.0
    speech_min_speech_ms: int = 400
    speech_max_silence_ms: int = 300
    speech_max_segment_seconds: float = 5.0
    speech_pre_roll_ms: int = 220

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @field_validator("alert_threshold", mode="before")
    @classmethod
    def _normalize_threshold(cls, value):
        # Unknown labels raise ValueError, surfaced by pydantic as a ValidationError.
        threshold = parse_threshold(value)
        return threshold.value if threshold is not None else None

    def require_project(self) -> str:
        """Returns the Google Cloud project, or raises if it is not configured."""
        if not self.google_cloud_project:
            raise MissingCredentialError(
                "GOOGLE_CLOUD_PROJECT is not set. The diagnostic and chat clients cannot start without it."
            )
        return self.google_cloud_project


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Returns the singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
        logging.getLogger("omnidiag.config").debug(
            f"Settings loaded (project={_settings.google_cloud_project}, location={_settings.google_cloud_location})"
        )
    return _settings


def reset_settings() -> None:
    """Drops the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
