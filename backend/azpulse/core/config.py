"""Application Configuration using Pydantic Settings."""

import os
from pathlib import Path
from typing import List

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_env_file() -> str:
    """
    Determine which .env file to load based on APP_ENV.

    Returns:
        Path to the .env file to load
    """
    app_env = os.getenv("APP_ENV", "development")
    base_dir = Path(__file__).parent.parent.parent  # backend/

    if app_env == "test":
        env_file = base_dir / ".env.test"
        if env_file.exists():
            return str(env_file)

    if app_env == "production":
        env_file = base_dir / ".env.production"
        if env_file.exists():
            return str(env_file)

    # Default to .env
    return str(base_dir / ".env")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "AzPulse"
    APP_ENV: str = "development"
    DEBUG: bool = True
    API_V1_PREFIX: str = "/api/v1"

    # Security
    ENCRYPTION_KEY: str
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Database
    # Note: Using str instead of PostgresDsn to support SQLite for testing
    DATABASE_URL: str

    # Redis / Celery
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]
    CORS_MAX_AGE: int = 600  # Preflight cache duration in seconds
    CORS_ALLOW_CREDENTIALS: bool = True

    # Error Tracking (Sentry)
    SENTRY_DSN: str = ""
    SENTRY_ENVIRONMENT: str = "development"
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1
    SENTRY_PROFILES_SAMPLE_RATE: float = 0.1

    # Azure endpoints
    AZURE_MANAGEMENT_URL: str = "https://management.azure.com"
    AZURE_LOG_ANALYTICS_URL: str = "https://api.loganalytics.io"

    # Token broker
    TOKEN_REFRESH_MARGIN_SECONDS: int = 120

    # Remote gateway
    GATEWAY_MAX_RETRIES: int = 3
    GATEWAY_BACKOFF_BASE_SECONDS: float = 2.0
    GATEWAY_BACKOFF_MAX_SECONDS: float = 60.0
    GATEWAY_HTTP_TIMEOUT_SECONDS: float = 30.0

    # Sync orchestration
    SYNC_MAX_CONCURRENCY: int = 4  # Tenants processed in parallel
    SYNC_CALL_TIMEOUT_SECONDS: float = 55.0  # Token, gateway and database calls
    SYNC_TASK_TIME_LIMIT_SECONDS: int = 3600  # Celery hard limit per sync
    SYNC_TASK_SOFT_TIME_LIMIT_SECONDS: int = 3300
    SYNC_STALE_AFTER_MINUTES: int = 75  # Must outlive the hard limit
    SYNC_CANCEL_POLL_SECONDS: float = 5.0
    SYNC_INTERVAL_RESOURCES_MINUTES: int = 360
    SYNC_INTERVAL_COSTS_MINUTES: int = 720
    SYNC_INTERVAL_METRICS_MINUTES: int = 60
    SYNC_INTERVAL_SQL_INSIGHTS_MINUTES: int = 60
    COST_LOOKBACK_DAYS: int = 2
    METRICS_LOOKBACK_HOURS: int = 24
    SQL_INSIGHTS_LOOKBACK_HOURS: int = 1
    WRITER_BATCH_SIZE: int = 200

    # Health score
    HEALTH_WEIGHT_PERFORMANCE: float = 0.5
    HEALTH_WEIGHT_WAIT_STATS: float = 0.3
    HEALTH_WEIGHT_REPLICATION: float = 0.2
    HEALTH_REPLICATION_LAG_THRESHOLD_SECONDS: float = 10.0

    # Cost anomaly detection
    ANOMALY_WINDOW_DAYS: int = 14
    ANOMALY_MIN_HISTORY_DAYS: int = 7
    ANOMALY_BASELINE: str = "mean"
    ANOMALY_MIN_EXPECTED_COST: float = 1.0
    ANOMALY_SPIKE_THRESHOLD_PERCENT: float = 10.0
    ANOMALY_DROP_THRESHOLD_PERCENT: float = 10.0
    ANOMALY_WARNING_PERCENT: float = 20.0
    ANOMALY_CRITICAL_PERCENT: float = 50.0
    ANOMALY_MAX_CATCHUP_DAYS: int = 3

    # Idle resource detection
    IDLE_CPU_THRESHOLD_PERCENT: float = 5.0
    IDLE_MIN_DAYS: int = 14
    IDLE_LOOKBACK_DAYS: int = 30
    IDLE_MIN_MONTHLY_COST: float = 0.0

    # Optimization scoring
    OPTIMIZATION_LOOKBACK_DAYS: int = 7
    OPTIMIZATION_WEIGHT_UTILIZATION: float = 0.4
    OPTIMIZATION_WEIGHT_COST_EFFICIENCY: float = 0.3
    OPTIMIZATION_WEIGHT_BEST_PRACTICES: float = 0.3

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: str | List[str]) -> List[str]:
        """Parse allowed origins from string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("ANOMALY_BASELINE")
    @classmethod
    def validate_baseline(cls, v: str) -> str:
        """Only mean and median baselines are supported."""
        v = v.lower()
        if v not in ("mean", "median"):
            raise ValueError("ANOMALY_BASELINE must be 'mean' or 'median'")
        return v

    @model_validator(mode="after")
    def validate_weights(self) -> "Settings":
        """
        Check that composite score weights each sum to one and that sync
        limits are consistent.

        A running log row younger than the task hard limit may still have
        a live worker behind it, so the stale reaper must wait longer.

        Raises:
            ValueError: If a weight set does not sum to 1.0 or the limits overlap
        """
        weight_sets = {
            "HEALTH_WEIGHT_*": (
                self.HEALTH_WEIGHT_PERFORMANCE,
                self.HEALTH_WEIGHT_WAIT_STATS,
                self.HEALTH_WEIGHT_REPLICATION,
            ),
            "OPTIMIZATION_WEIGHT_*": (
                self.OPTIMIZATION_WEIGHT_UTILIZATION,
                self.OPTIMIZATION_WEIGHT_COST_EFFICIENCY,
                self.OPTIMIZATION_WEIGHT_BEST_PRACTICES,
            ),
        }
        for name, weights in weight_sets.items():
            if any(w < 0 for w in weights) or abs(sum(weights) - 1.0) > 1e-6:
                raise ValueError(f"{name} settings must be non-negative and sum to 1.0")
        if self.ANOMALY_WARNING_PERCENT > self.ANOMALY_CRITICAL_PERCENT:
            raise ValueError("ANOMALY_WARNING_PERCENT cannot exceed ANOMALY_CRITICAL_PERCENT")
        if self.SYNC_STALE_AFTER_MINUTES * 60 <= self.SYNC_TASK_TIME_LIMIT_SECONDS:
            raise ValueError("SYNC_STALE_AFTER_MINUTES must exceed SYNC_TASK_TIME_LIMIT_SECONDS")
        if self.SYNC_TASK_SOFT_TIME_LIMIT_SECONDS >= self.SYNC_TASK_TIME_LIMIT_SECONDS:
            raise ValueError("SYNC_TASK_SOFT_TIME_LIMIT_SECONDS must be below SYNC_TASK_TIME_LIMIT_SECONDS")
        return self


# Create global settings instance
settings = Settings()  # type: ignore
