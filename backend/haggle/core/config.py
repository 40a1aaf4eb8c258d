"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Literal
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Haggle Negotiation Service"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/negotiations.db"
    PERSISTENCE_MAX_RETRIES: int = 3
    PERSISTENCE_RETRY_DELAY: float = 0.2  # seconds, base for exponential backoff

    # Negotiation rules
    NEGOTIATION_MAX_ROUNDS_CEILING: int = 20
    NEGOTIATION_DEFAULT_MAX_ROUNDS: int = 10
    NEGOTIATION_EXPIRY_DAYS: int = 7
    MESSAGE_MAX_LENGTH: int = 1000
    MIN_OFFER_RATIO: float = 0.5  # initial offer must be >= min_price * ratio
    DEFAULT_CURRENCY: str = "USD"

    # Expiry sweep
    EXPIRY_SWEEP_ENABLED: bool = True
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300

    # Listing service (external collaborator)
    LISTING_SERVICE_URL: str = ""
    LISTING_SERVICE_TIMEOUT: float = 5.0

    # Counter-offer agent
    AGENT_ENABLED: bool = True
    AGENT_TIMEOUT_SECONDS: float = 20.0
    AGENT_TEMPERATURE: float = 0.2
    AGENT_MAX_TOKENS: int = 512
    AGENT_HISTORY_MESSAGES: int = 5

    # LLM Provider Selection
    LLM_PROVIDER: Literal["lm_studio", "openrouter"] = "lm_studio"

    # LM Studio Configuration
    LM_STUDIO_BASE_URL: str = "http://localhost:1234/v1"
    LM_STUDIO_DEFAULT_MODEL: str = "qwen/qwen3-1.7b"
    LM_STUDIO_TIMEOUT: int = 30  # seconds

    # OpenRouter Configuration
    LLM_ENABLE_OPENROUTER: bool = False
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_DEFAULT_MODEL: str = "google/gemini-2.5-flash-lite"
    OPENROUTER_TIMEOUT: int = 60  # seconds

    # LLM Request Configuration
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_DELAY: float = 2  # seconds, base for exponential backoff

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from comma-separated string or list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    @field_validator("NEGOTIATION_DEFAULT_MAX_ROUNDS")
    @classmethod
    def validate_default_rounds(cls, v: int, info) -> int:
        """Default round budget must sit within the hard ceiling."""
        ceiling = info.data.get("NEGOTIATION_MAX_ROUNDS_CEILING", 20)
        if v < 1 or v > ceiling:
            raise ValueError(f"NEGOTIATION_DEFAULT_MAX_ROUNDS must be between 1 and {ceiling}")
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    # Streaming / SSE
    SSE_POLL_INTERVAL: float = 1.0  # seconds between timeline polls
    SSE_HEARTBEAT_INTERVAL: int = 15  # seconds between heartbeat events

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Singleton instance
settings = Settings()
