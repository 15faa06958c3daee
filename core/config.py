"""
Centralized configuration management.
All environment variables and settings are defined here.
"""
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="Statement Classification Service", alias="APP_NAME")
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Remote classifier (OpenAI-compatible chat completions endpoint)
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_gateway_url: str = Field(
        default="https://api.openai.com/v1/chat/completions", alias="OPENAI_GATEWAY_URL"
    )
    openai_model: str = Field(default="gpt-5-mini", alias="OPENAI_MODEL")
    openai_timeout: float = Field(default=60.0, alias="OPENAI_TIMEOUT")
    openai_max_retries: int = Field(default=3, alias="OPENAI_MAX_RETRIES")
    openai_verify_ssl: bool = Field(default=True, alias="OPENAI_VERIFY_SSL")
    openai_max_completion_tokens: int = Field(default=8000, alias="OPENAI_MAX_COMPLETION_TOKENS")

    # Pricing, USD per one million tokens
    input_cost_per_million: float = Field(default=0.25, alias="INPUT_COST_PER_MILLION")
    output_cost_per_million: float = Field(default=2.0, alias="OUTPUT_COST_PER_MILLION")

    # Bulk classification defaults
    bulk_max_tokens_per_chunk: int = Field(default=12000, alias="BULK_MAX_TOKENS_PER_CHUNK")
    bulk_max_transactions_per_chunk: int = Field(default=50, alias="BULK_MAX_TRANSACTIONS_PER_CHUNK")
    bulk_inter_chunk_delay: float = Field(default=0.1, alias="BULK_INTER_CHUNK_DELAY")

    # Cascade
    pattern_confidence_floor: float = Field(default=0.6, alias="PATTERN_CONFIDENCE_FLOOR")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard levels."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v_upper

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        """Validate port is in valid range."""
        if not (1 <= v <= 65535):
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("openai_timeout", "bulk_inter_chunk_delay")
    @classmethod
    def validate_non_negative(cls, v):
        """Timeouts and delays cannot be negative."""
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @field_validator("openai_max_retries", "bulk_max_transactions_per_chunk", "bulk_max_tokens_per_chunk")
    @classmethod
    def validate_positive_int(cls, v):
        """Retry counts and chunk limits must be at least 1."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("pattern_confidence_floor")
    @classmethod
    def validate_floor(cls, v):
        """Confidence floor must be a probability."""
        if not (0.0 <= v <= 1.0):
            raise ValueError("Pattern confidence floor must be between 0 and 1")
        return v

    @property
    def remote_configured(self) -> bool:
        """True when an API key is available for the remote classifier."""
        return bool(self.openai_api_key)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings singleton.

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
