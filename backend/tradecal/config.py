"""
Configuration management for the trade acceptance calibration engine using Pydantic Settings.

Loads configuration from environment variables with type validation and sane defaults.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # Database
    database_url: str = Field(default="sqlite:///./tradecal.db", description="SQLAlchemy connection URL")

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: str = Field(default="", description="Log file path (empty disables the file sink)")

    # Calibration
    calibration_season: int = Field(default=2025, description="Season whose calibration record is active")
    observed_accept_rate: float = Field(
        default=0.85,
        description="Observed acceptance rate used when no live outcome sample is large enough",
    )
    calibration_cache_ttl_seconds: int = Field(default=3600, description="Calibration state cache TTL")
    calibration_lock_ttl_seconds: int = Field(default=300, description="Advisory job lease staleness TTL")
    feedback_lookback_days: int = Field(default=90, description="Feedback window for weight nudging")

    # Historical proxy thresholds (percent-difference buckets tuned on 2024-2025 data)
    proxy_close_pct: float = Field(default=15.0, description="percentDiff below this counts as a close deal")
    proxy_moderate_pct: float = Field(default=25.0, description="percentDiff below this counts as a moderate gap")
    proxy_fair_pct: float = Field(default=20.0, description="percentDiff below this earns the fairness proxy")
    proxy_delta_scale: float = Field(default=12.0, description="Market delta percent per unit of x3")

    # Valuation market source
    valuation_api_url: str = Field(
        default="https://api.fantasycalc.com/values/current",
        description="Player/pick value distribution endpoint",
    )
    valuation_timeout_seconds: int = Field(default=15, description="Valuation request timeout")
    valuation_max_retries: int = Field(default=3, description="Valuation request retries")

    # Metrics dashboard
    metrics_days_back: int = Field(default=30, description="Default dashboard window in days")

    # Scheduler
    scheduler_enabled: bool = Field(default=True, description="Enable background calibration scheduler")
    calibration_interval_hours: int = Field(default=6, description="Background calibration interval")
    drift_cron_day_of_week: str = Field(default="mon", description="Weekly drift/recalibration day")
    drift_cron_hour: int = Field(default=6, description="Weekly drift/recalibration hour (UTC)")
    metrics_rollup_hour: int = Field(default=3, description="Daily model metrics rollup hour (UTC)")

    # Admin
    admin_key: str = Field(default="", description="Key required by the admin calibration API")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and text renderers exist."""
        v = v.lower()
        if v not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @field_validator("observed_accept_rate")
    @classmethod
    def validate_observed_rate(cls, v: float) -> float:
        if not 0.0 < v < 1.0:
            raise ValueError("observed_accept_rate must be strictly between 0 and 1")
        return v

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


# Global settings instance
settings = Settings()
