"""
Application Configuration
=========================

Centralized configuration using Pydantic Settings.
Loads from environment variables with validation.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ENVIRONMENT: str = Field(default="development")

    # Server
    PORT: int = Field(default=8000, description="Port to bind to")

    # Development Settings
    DEV_AUTH_DISABLED: bool = Field(
        default=False,
        description="Disable authentication for local development/testing"
    )

    # Database
    DATABASE_URL: str = Field(default="")
    DATABASE_ECHO: bool = Field(default=False)

    # Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    SUBSCRIPTION_STATUS_CACHE_TTL: int = Field(default=30)

    # JWT Authentication (tokens are issued by the auth service)
    JWT_SECRET: str = Field(default="change-this-secret-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30)

    # Service-to-service / admin access
    SERVICE_API_KEY: str = Field(default="")
    WEBHOOK_SECRET: str = Field(default="")

    # App Store receipt verification
    APPLE_SHARED_SECRET: str = Field(default="")
    APPLE_VERIFY_URL_PRODUCTION: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt"
    )
    APPLE_VERIFY_URL_SANDBOX: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt"
    )

    # Play Store purchase signature verification (base64 DER public key)
    GOOGLE_PLAY_PUBLIC_KEY: str = Field(default="")

    # Web checkout receipt signing secret
    WEB_RECEIPT_SECRET: str = Field(default="")

    # Verification retry policy
    VERIFY_MAX_ATTEMPTS: int = Field(default=4, ge=1)
    VERIFY_BACKOFF_BASE_SECONDS: float = Field(default=0.25, ge=0)
    VERIFY_BACKOFF_MAX_SECONDS: float = Field(default=4.0, ge=0)
    VERIFY_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Persistence timeouts
    STORAGE_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    EVENT_LOG_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)
    LEDGER_MAX_APPLY_ATTEMPTS: int = Field(default=3, ge=1)

    # Entitlement gate
    FEATURE_MAP_PATH: Optional[str] = Field(
        default=None,
        description="JSON file with the feature -> requirement mapping",
    )
    GATE_READ_TIMEOUT_SECONDS: float = Field(default=2.0, gt=0)

    # App Configuration
    ALLOWED_ORIGINS: str = Field(default="http://localhost:3000,http://localhost:8000")

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def database_url_async(self) -> str:
        """Convert database URL to async format for asyncpg."""
        url = self.DATABASE_URL
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def auth_disabled(self) -> bool:
        """Check if auth is disabled (only allowed in development)."""
        return self.is_development and self.DEV_AUTH_DISABLED

    @field_validator("JWT_SECRET")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is sufficiently long."""
        if len(v) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters long")
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


# Export a default settings instance
settings = get_settings()
