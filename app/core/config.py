# python
# app/core/config.py
"""Configuration settings for the Interest Connect API.

Uses Pydantic BaseSettings for environment variable management.
"""
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentEnum(str, Enum):
    development = "development"
    testing = "testing"
    staging = "staging"
    production = "production"


class LogLevelEnum(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormatEnum(str, Enum):
    simple = "simple"
    json = "json"


class RealtimeBackendEnum(str, Enum):
    memory = "memory"
    redis = "redis"


class Settings(BaseSettings):
    # Pydantic v2 settings configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Application Settings =====
    app_name: str = Field(default="Interest Connect API", description="Application name")
    environment: EnvironmentEnum = Field(
        default=EnvironmentEnum.development, description="Environment type"
    )
    debug: bool = Field(default=False, description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # ===== Auth Settings =====
    auth_jwt_secret: str | None = Field(
        default=None, description="Secret used to verify identity provider tokens"
    )
    auth_jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    auth_jwt_audience: str | None = Field(default=None, description="Expected token audience")

    # ===== Database Settings =====
    database_url: str | None = Field(default=None, description="Database connection URL")
    db_pool_size: int = Field(default=20, description="Database connection pool size")
    db_max_overflow: int = Field(default=0, description="Database max overflow connections")

    # Test database URL
    test_database_url: str | None = Field(default=None, description="Test database URL")

    # ===== Connect (matching & live sessions) =====
    connect_search_timeout_seconds: float = Field(
        default=40, description="Seconds a search may stay unmatched before it is cancelled"
    )
    connect_messages_page_size: int = Field(default=50, description="Messages per page")
    connect_message_max_length: int = Field(default=10000, description="Maximum message length")
    connect_auto_match: bool = Field(
        default=True, description="Run the matchmaker right after a request is created"
    )
    connect_requeue_on_end: bool = Field(
        default=False,
        description="Put both participants back to searching when a connection ends",
    )
    connect_matchmaker_interval_seconds: int = Field(
        default=10, description="Celery Beat period for the matchmaker sweep"
    )

    # ===== Realtime =====
    realtime_backend: RealtimeBackendEnum = Field(
        default=RealtimeBackendEnum.memory, description="Change notification fan-out backend"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    realtime_channel: str = Field(
        default="connect:changes", description="Redis pub/sub channel for change events"
    )
    realtime_publish_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts for publishing one event to Redis"
    )
    realtime_retry_min_wait: float = Field(
        default=0.1, ge=0, description="Minimum wait between Redis publish attempts (seconds)"
    )
    realtime_retry_max_wait: float = Field(
        default=2.0, ge=0, description="Maximum wait between Redis publish attempts (seconds)"
    )

    # ===== CORS Settings =====
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173",
        description="Allowed CORS origins (comma-separated)",
    )

    @property
    def allowed_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        if isinstance(self.allowed_origins, str):
            return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]
        return self.allowed_origins if isinstance(self.allowed_origins, list) else []

    # ===== Background Tasks (Celery) =====
    celery_broker_url: str = Field(
        default="redis://localhost:6379/1", description="Celery broker URL"
    )
    celery_result_backend: str = Field(
        default="redis://localhost:6379/2", description="Celery result backend"
    )

    # ===== Monitoring & Logging =====
    log_level: LogLevelEnum = Field(default=LogLevelEnum.INFO, description="Logging level")
    log_format: LogFormatEnum = Field(default=LogFormatEnum.simple, description="Log format")

    # ===== Server Settings =====
    host: str = Field(default="127.0.0.1", description="Host to bind the server")
    port: int = Field(default=8000, description="Port to bind the server")

    # ===== Development Settings =====
    docs_url: str = Field(default="/docs", description="API documentation URL")
    redoc_url: str = Field(default="/redoc", description="ReDoc documentation URL")

    # ===== Computed Properties =====
    @property
    def is_development(self) -> bool:
        return self.environment == EnvironmentEnum.development

    @property
    def is_production(self) -> bool:
        return self.environment == EnvironmentEnum.production

    @property
    def is_testing(self) -> bool:
        return self.environment == EnvironmentEnum.testing

    @property
    def uses_redis_realtime(self) -> bool:
        return self.realtime_backend == RealtimeBackendEnum.redis

    @property
    def database_url_sync(self) -> str:
        if not self.database_url:
            return ""
        return self.database_url.replace("postgresql+asyncpg://", "postgresql://")

    # ===== Validation Methods =====
    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v):
        if v and isinstance(v, str):
            lv = v.lower()
            if lv in ["dev", "develop"]:
                return "development"
            if lv in ["prod"]:
                return "production"
            return lv
        return v

    @field_validator("connect_search_timeout_seconds")
    @classmethod
    def validate_search_timeout(cls, v):
        if v <= 0 or v > 600:
            raise ValueError("Search timeout must be between 0 and 600 seconds")
        return v

    @field_validator("connect_messages_page_size")
    @classmethod
    def validate_page_size(cls, v):
        if v < 1 or v > 200:
            raise ValueError("Messages page size must be between 1 and 200")
        return v

    @model_validator(mode="after")
    def set_computed_fields(self):
        if not self.test_database_url and self.database_url and "neondb" in self.database_url:
            self.test_database_url = self.database_url.replace("neondb", "neondb_test")
        return self


settings = Settings()


class ConfigValidator:
    @staticmethod
    def validate_required_settings():
        errors = []
        if not settings.database_url:
            errors.append("DATABASE_URL is required")
        if settings.is_production and not settings.auth_jwt_secret:
            errors.append("AUTH_JWT_SECRET is required in production")
        if settings.is_production and not settings.uses_redis_realtime:
            errors.append("REALTIME_BACKEND=redis is required in production")
        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    @staticmethod
    def get_feature_status() -> dict:
        return {
            "auto_match": settings.connect_auto_match,
            "requeue_on_end": settings.connect_requeue_on_end,
            "realtime_backend": settings.realtime_backend.value,
            "token_verification": bool(settings.auth_jwt_secret),
            "environment": settings.environment,
        }


def get_config_summary() -> dict:
    return {
        "app_name": settings.app_name,
        "version": settings.version,
        "environment": settings.environment,
        "debug": settings.debug,
        "features": ConfigValidator.get_feature_status(),
        "database_configured": bool(settings.database_url),
        "search_timeout_seconds": settings.connect_search_timeout_seconds,
        "messages_page_size": settings.connect_messages_page_size,
    }


__all__ = [
    "settings",
    "Settings",
    "ConfigValidator",
    "get_config_summary",
    "EnvironmentEnum",
    "LogLevelEnum",
    "LogFormatEnum",
    "RealtimeBackendEnum",
]
