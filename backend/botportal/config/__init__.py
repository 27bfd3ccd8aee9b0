"""
Application configuration.
Settings are loaded from environment variables and an optional .env file.

Version: 1.0.0
"""
from functools import lru_cache
from typing import List, Optional
import logging

from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Bot portal settings.

    Grouped the same way as the .env template: application, database,
    redis, authentication, agent bridge, delivery and operational flags.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    # ===========================
    # Application
    # ===========================

    app_name: str = Field(default="Bot Portal", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="development, testing or production")
    debug: bool = Field(default=False, description="Enable debug mode")
    api_prefix: str = Field(default="/api/v1", description="Prefix for REST routes")
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)
    api_workers: int = Field(default=1, ge=1)

    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    cors_allow_credentials: bool = True

    # ===========================
    # Database
    # ===========================

    database_url: str = Field(
        default="sqlite:///./data/botportal.db",
        description="Database URL (sqlite:/// or postgresql://)"
    )
    database_echo: bool = False
    database_pool_size: int = Field(default=10, ge=1)
    database_pool_overflow: int = Field(default=20, ge=0)
    database_pool_timeout: int = Field(default=30, ge=1)
    database_pool_recycle: int = Field(default=3600, ge=60)

    store_backend: str = Field(
        default="sql",
        description="Chat store backend: 'sql' or 'in_memory'"
    )

    # ===========================
    # Redis / change feed
    # ===========================

    redis_url: str = Field(default="redis://localhost:6379/0")
    change_feed_backend: str = Field(
        default="in_memory",
        description="Change feed backend: 'in_memory' or 'redis'"
    )
    change_feed_channel_prefix: str = Field(default="botportal:messages:")
    change_feed_queue_size: int = Field(default=256, ge=1)

    # ===========================
    # Authentication
    # ===========================

    secret_key: SecretStr = Field(
        default=SecretStr("change-me-in-production"),
        description="JWT signing key"
    )
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiration_hours: int = Field(default=24, ge=1)
    allow_anonymous_user_id: bool = Field(
        default=False,
        description="Accept a userId from the request body when no bearer token is sent"
    )
    strict_bot_access: bool = Field(
        default=True,
        description="Deny bots that have no bot_access row for the tenant"
    )

    # ===========================
    # Agent bridge
    # ===========================

    agent_webhook_url: Optional[str] = Field(
        default=None,
        description="Default external agent webhook URL"
    )
    agent_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        le=3600,
        description="Hard deadline for one agent call"
    )
    agent_history_limit: int = Field(default=10, ge=0, le=100)
    agent_writes_directly: bool = Field(
        default=False,
        description="Agent updates the placeholder itself through the callback endpoint"
    )
    agent_callback_secret: Optional[SecretStr] = Field(default=None)
    agent_circuit_failure_threshold: int = Field(default=5, ge=1)
    agent_circuit_recovery_seconds: float = Field(default=60.0, gt=0)
    agent_locale: str = Field(default="en", description="Locale for user-facing agent messages")

    max_message_length: int = Field(default=8000, ge=1)

    # ===========================
    # Delivery
    # ===========================

    status_cache_size: int = Field(default=1024, ge=0)
    status_cache_ttl_seconds: int = Field(default=300, ge=1)
    background_drain_timeout_seconds: float = Field(default=30.0, ge=0)

    # ===========================
    # Operations
    # ===========================

    enable_telemetry: bool = True
    rate_limit_enabled: bool = False
    rate_limit_requests: int = Field(default=120, ge=1)
    rate_limit_period: int = Field(default=60, ge=1)
    enable_mock_agent: bool = Field(default=False, description="Mount the mock agent webhook")

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("sql", "in_memory"):
            raise ValueError(f"Unknown store backend: {v}")
        return v

    @field_validator("change_feed_backend")
    @classmethod
    def validate_change_feed_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("in_memory", "redis"):
            raise ValueError(f"Unknown change feed backend: {v}")
        return v

    @field_validator("agent_locale")
    @classmethod
    def validate_locale(cls, v: str) -> str:
        return v.strip().lower()[:2] or "en"

    @property
    def database_is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def database_is_postgresql(self) -> bool:
        return self.database_url.startswith("postgresql")

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_callback_secret(self) -> Optional[str]:
        """Return the agent callback secret value, if configured."""
        if self.agent_callback_secret is None:
            return None
        return self.agent_callback_secret.get_secret_value() or None

    def validate_configuration(self) -> List[str]:
        """
        Return configuration warnings for startup logging.
        """
        warnings = []
        if self.is_production and self.secret_key.get_secret_value() == "change-me-in-production":
            warnings.append("SECRET_KEY is using the default value in production")
        if not self.agent_webhook_url:
            warnings.append("AGENT_WEBHOOK_URL not set; bots need a per-bot webhook_url")
        if self.is_production and self.allow_anonymous_user_id:
            warnings.append("ALLOW_ANONYMOUS_USER_ID is enabled in production")
        if self.change_feed_backend == "in_memory" and self.api_workers > 1:
            warnings.append("In-memory change feed does not fan out across workers; use redis")
        return warnings


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


__all__ = ["Settings", "get_settings", "settings"]
