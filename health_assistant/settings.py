"""Settings configuration for the Health Assistant engine."""

from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from health_assistant.core.models import ProviderType

# Load environment variables from .env file in the same directory as this file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # OpenAI Configuration
    openai_api_key: Optional[str] = Field(
        default=None,
        description="API key for OpenAI"
    )

    openai_model: str = Field(
        default="gpt-4o",
        description="OpenAI chat model"
    )

    openai_base_url: Optional[str] = Field(
        default=None,
        description="Override for the OpenAI API endpoint"
    )

    # Gemini Configuration
    gemini_api_key: Optional[str] = Field(
        default=None,
        description="API key for Google Gemini"
    )

    gemini_model: str = Field(
        default="gemini-2.5-flash",
        description="Gemini model"
    )

    # Local Responder Configuration
    local_model: str = Field(
        default="llama-3-8b-health",
        description="On-device model identifier"
    )

    local_model_path: Optional[str] = Field(
        default=None,
        description="Path to the on-device model file"
    )

    # Generation Configuration
    llm_temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for every backend"
    )

    llm_max_tokens: int = Field(
        default=2048,
        ge=1,
        description="Maximum tokens per response"
    )

    fallback_order: str = Field(
        default="openai,gemini,local",
        description="Comma-separated backend failover order"
    )

    request_timeout_s: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout for cloud backends"
    )

    # Conversation Configuration
    max_history_messages: int = Field(
        default=10,
        ge=0,
        description="Previous messages sent along with each turn"
    )

    biometric_window_days: int = Field(
        default=7,
        ge=0,
        description="Daily biometric samples included in the context"
    )

    max_context_chars: Optional[int] = Field(
        default=None,
        gt=0,
        description="Upper bound on the system prompt length"
    )

    emergency_region: str = Field(
        default="US",
        description="Region used to order crisis hotlines (US, UK, EU)"
    )

    prompt_template_path: Optional[str] = Field(
        default=None,
        description="JSON file overriding the system prompt wording"
    )

    # Database Configuration
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL; in-memory storage when unset"
    )

    db_pool_min_size: int = Field(
        default=5,
        description="Minimum database connection pool size"
    )

    db_pool_max_size: int = Field(
        default=20,
        description="Maximum database connection pool size"
    )

    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    @field_validator("fallback_order")
    @classmethod
    def validate_fallback_order(cls, value: str) -> str:
        names = [name.strip().lower() for name in value.split(",") if name.strip()]
        if not names:
            raise ValueError("fallback_order must name at least one provider")
        for name in names:
            ProviderType(name)
        return ",".join(names)

    @property
    def provider_order(self) -> List[ProviderType]:
        return [ProviderType(name) for name in self.fallback_order.split(",")]


def load_settings() -> Settings:
    """Load settings with proper error handling."""
    try:
        return Settings()
    except Exception as e:
        error_msg = f"Failed to load settings: {e}"
        if "fallback_order" in str(e).lower():
            error_msg += "\nFALLBACK_ORDER must list providers from: openai, gemini, local"
        if "database_url" in str(e).lower():
            error_msg += "\nCheck DATABASE_URL in your .env file"
        raise ValueError(error_msg) from e
