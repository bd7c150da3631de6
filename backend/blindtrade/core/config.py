"""
Application configuration using pydantic-settings.

WHAT: Centralized config from environment variables
WHY: Type-safe, validated config with sensible defaults
HOW: Pydantic BaseSettings reads from .env and environment
"""

from decimal import Decimal
from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # App metadata
    APP_NAME: str = "Blind Procurement Marketplace"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./data/marketplace.db"
    DATABASE_TIMEOUT: float = 5.0  # seconds, SQLite busy timeout

    # Governance fee (paid once by each party to unlock identities)
    GOVERNANCE_FEE_AMOUNT: Decimal = Decimal("25.00")
    GOVERNANCE_FEE_CURRENCY: str = "INR"
    CURRENCY_DECIMALS: int = 2

    # Negotiation Configuration
    CONFLICT_MAX_RETRIES: int = 3  # optimistic-concurrency attempts per operation
    MAX_MESSAGE_LENGTH: int = 5000
    ADMIN_USER_IDS: str = ""  # comma-separated ids allowed to finalize

    # Collaborator providers
    PAYMENT_PROVIDER: Literal["sandbox", "http"] = "sandbox"
    PAYMENT_GATEWAY_URL: str = "http://localhost:8100/api/v1"
    DIRECTORY_PROVIDER: Literal["static", "http"] = "static"
    USER_DIRECTORY_URL: str = "http://localhost:8200/api/v1"
    CATALOG_PROVIDER: Literal["static", "http"] = "static"
    CATALOG_URL: str = "http://localhost:8300/api/v1"

    # Collaborator request configuration
    COLLABORATOR_TIMEOUT: float = 5.0  # seconds
    COLLABORATOR_MAX_RETRIES: int = 3
    COLLABORATOR_RETRY_DELAY: float = 0.5  # seconds, base for exponential backoff

    # Realtime relay / SSE
    REALTIME_QUEUE_SIZE: int = 100  # per subscriber; overflow drops events
    SSE_HEARTBEAT_INTERVAL: int = 15  # seconds between heartbeat events

    # CORS - accepts comma-separated string or list
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @field_validator("CORS_ORIGINS", "ADMIN_USER_IDS", mode="before")
    @classmethod
    def parse_comma_separated(cls, v):
        """Accept either a comma-separated string or a list."""
        if isinstance(v, list):
            return ",".join(v)
        return v

    def get_cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    def get_admin_user_ids(self) -> set[str]:
        """Get administrator ids as a set."""
        return {user_id.strip() for user_id in self.ADMIN_USER_IDS.split(",") if user_id.strip()}

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "./data/logs/app.log"

    class Config:
        # Look for .env in project root first, then backend/.env
        env_file = [
            str(Path(__file__).parent.parent.parent.parent / ".env"),
            str(Path(__file__).parent.parent.parent / ".env"),
        ]
        env_file_encoding = "utf-8"
        case_sensitive = True


# Singleton instance
settings = Settings()
