import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using absolute path for SQLite to avoid path resolution issues.

    ⚠️ WARNING: SQLite is NOT suitable for production deployments!
    - Request logs and alerts are lost on container rebuilds
    - Use PostgreSQL by setting DATABASE_URL environment variable
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info("Using DATABASE_URL from environment")
        return db_url

    # Use absolute path for SQLite (LOCAL DEVELOPMENT ONLY)
    db_path = Path(__file__).parent.parent.parent / "aiwatch.db"
    abs_path = db_path.resolve()
    db_url = f"sqlite:///{abs_path}"
    logger.warning(f"⚠️ Using SQLite database (LOCAL DEV ONLY): {db_url}")
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    cache_backend: str = Field(
        default="redis",
        validation_alias="CACHE_BACKEND",
        description="Rolling aggregate cache: 'redis' or 'memory'",
    )
    rate_limit_backend: str = Field(
        default="memory",
        validation_alias="RATE_LIMIT_BACKEND",
        description="Rate limit counter store: 'redis' (shared across instances) or 'memory'",
    )

    # Rate limit tiers (requests per 60s window)
    rate_limit_requests_per_minute: int = Field(default=60, validation_alias="RATE_LIMIT_REQUESTS_PER_MINUTE")
    auth_rate_limit_per_minute: int = Field(default=5, validation_alias="AUTH_RATE_LIMIT_PER_MINUTE")
    ai_rate_limit_per_minute: int = Field(default=10, validation_alias="AI_RATE_LIMIT_PER_MINUTE")
    rate_limit_window_seconds: int = Field(default=60, validation_alias="RATE_LIMIT_WINDOW_SECONDS")
    auth_path_prefixes: list[str] = Field(default=["/auth", "/api/auth"], validation_alias="AUTH_PATH_PREFIXES")
    ai_path_prefixes: list[str] = Field(default=["/ai", "/api/ai"], validation_alias="AI_PATH_PREFIXES")

    # Monitoring
    realtime_cache_ttl_seconds: int = Field(default=300, validation_alias="REALTIME_CACHE_TTL_SECONDS")
    stale_request_max_age_minutes: int = Field(default=10, validation_alias="STALE_REQUEST_MAX_AGE_MINUTES")
    alert_response_time_warning_seconds: float = Field(default=10.0, validation_alias="ALERT_RESPONSE_TIME_WARNING_SECONDS")
    alert_response_time_critical_seconds: float = Field(default=30.0, validation_alias="ALERT_RESPONSE_TIME_CRITICAL_SECONDS")
    alert_accuracy_warning: float = Field(default=0.7, validation_alias="ALERT_ACCURACY_WARNING")
    alert_accuracy_critical: float = Field(default=0.5, validation_alias="ALERT_ACCURACY_CRITICAL")

    # Health
    health_check_timeout_seconds: float = Field(default=5.0, validation_alias="HEALTH_CHECK_TIMEOUT_SECONDS")
    memory_limit_mb: float | None = Field(
        default=None,
        validation_alias="MEMORY_LIMIT_MB",
        description="Container memory limit; total system memory is used when unset",
    )
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    instance_id: str = Field(default="unknown", validation_alias="INSTANCE_ID")
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    port: int = Field(default=8000, validation_alias="PORT")

    # Background jobs
    scheduler_enabled: bool = Field(default=True, validation_alias="SCHEDULER_ENABLED")
    sweep_interval_minutes: int = Field(default=5, validation_alias="SWEEP_INTERVAL_MINUTES")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str | None = Field(default=None, validation_alias="LOG_FILE")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("cache_backend", "rate_limit_backend")
    @classmethod
    def validate_backend(cls, value: str) -> str:
        lower_value = value.lower()
        if lower_value not in {"redis", "memory"}:
            raise ValueError(f"Backend must be 'redis' or 'memory', got: {value}")
        return lower_value

    @field_validator(
        "rate_limit_requests_per_minute",
        "auth_rate_limit_per_minute",
        "ai_rate_limit_per_minute",
        "rate_limit_window_seconds",
        "realtime_cache_ttl_seconds",
        "stale_request_max_age_minutes",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("health_check_timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("HEALTH_CHECK_TIMEOUT_SECONDS must be > 0")
        return value
