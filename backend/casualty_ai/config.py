import logging
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_config_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Google AI Configuration
    google_api_key: str = ""

    # Model Configuration
    gemini_model: str = "gemini-2.0-flash"
    gemini_temperature: float = 0.7
    gemini_top_p: float = 0.9
    gemini_max_output_tokens: int = 8192

    # Remote call bounds
    gemini_timeout_seconds: float = 30.0
    gemini_max_retries: int = 3
    media_fetch_timeout_seconds: float = 20.0
    max_media_bytes: int = 20 * 1024 * 1024

    # Batch analysis
    batch_max_concurrency: int = 4

    # Poll-until-visible step after a cold-start batch
    analysis_visibility_poll_interval_ms: int = 250
    analysis_visibility_max_attempts: int = 20

    # Database Configuration
    database_path: str = "./data/casualty_ai.db"

    # Application Configuration
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True  # Allow runtime updates
    )

    @field_validator("gemini_temperature", "gemini_top_p")
    @classmethod
    def validate_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0.0 and 1.0")
        return v

    @field_validator(
        "gemini_timeout_seconds",
        "media_fetch_timeout_seconds",
        "gemini_max_retries",
        "gemini_max_output_tokens",
        "max_media_bytes",
        "batch_max_concurrency",
        "analysis_visibility_poll_interval_ms",
        "analysis_visibility_max_attempts",
    )
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()

    def validate_config(self) -> List[str]:
        """Log warnings for missing configurations."""
        warnings = []
        if not self.google_api_key:
            warnings.append("GOOGLE_API_KEY not set - evidence analysis will fail upstream")
        if self.environment == "production" and self.debug:
            warnings.append("DEBUG is enabled in production")
        for w in warnings:
            _config_logger.warning(f"[CONFIG] {w}")
        return warnings


# Global settings instance
settings = Settings()
