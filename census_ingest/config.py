"""
Configuration for the Census ingest engine.

Two layers:

- ``Settings`` (pydantic-settings) reads the process environment and ``.env``:
  logging, persistence DSN parts, fixture location and optional overrides.
- ``LoadingConfig`` (frozen pydantic model) is the immutable configuration a
  scheduler instance runs with: concurrency, retry bounds, API quota, batch
  sizes, default priorities, validation thresholds and monitoring thresholds.

``build_loading_config`` derives the latter from the former, adapting the API
budget to key availability and the deployment environment.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from census_ingest.domain.models import GeographyLevel

# Upstream limit on codes or variables in a single API call.
API_MAX_PER_CALL = 50

DEFAULT_BATCH_SIZES: Dict[GeographyLevel, int] = {
    GeographyLevel.NATION: 1,
    GeographyLevel.STATE: 50,
    GeographyLevel.METRO: 25,
    GeographyLevel.COUNTY: 50,
    GeographyLevel.PLACE: 30,
    GeographyLevel.ZCTA: 40,
    GeographyLevel.TRACT: 20,
    GeographyLevel.BLOCK_GROUP: 15,
}

DEFAULT_PRIORITIES: Dict[GeographyLevel, int] = {
    GeographyLevel.METRO: 100,
    GeographyLevel.NATION: 95,
    GeographyLevel.STATE: 90,
    GeographyLevel.COUNTY: 70,
    GeographyLevel.ZCTA: 60,
    GeographyLevel.PLACE: 50,
    GeographyLevel.TRACT: 30,
    GeographyLevel.BLOCK_GROUP: 20,
}


class ApiRateLimit(BaseModel):
    daily_limit: int = Field(500, ge=1)
    burst_limit: int = Field(10, ge=1)
    reserve_for_users: int = Field(50, ge=0)
    burst_window_seconds: float = Field(1.0, gt=0)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _reserve_below_daily(self) -> "ApiRateLimit":
        if self.reserve_for_users >= self.daily_limit:
            raise ValueError("reserve_for_users must be lower than daily_limit")
        return self


class QualityThresholds(BaseModel):
    completeness: float = Field(0.95, ge=0.0, le=1.0)
    accuracy: float = Field(0.98, ge=0.0, le=1.0)
    consistency: float = Field(0.90, ge=0.0, le=1.0)

    model_config = {"frozen": True}


class ValidationSettings(BaseModel):
    enabled: bool = True
    strict_mode: bool = False
    quality_thresholds: QualityThresholds = QualityThresholds()

    model_config = {"frozen": True}


class AlertThresholds(BaseModel):
    error_rate: float = Field(0.05, ge=0.0, le=1.0)
    api_usage: float = Field(0.90, ge=0.0, le=1.0)
    memory_usage: float = Field(0.85, ge=0.0, le=1.0)

    model_config = {"frozen": True}


class MonitoringConfig(BaseModel):
    metrics_interval_ms: int = Field(30_000, ge=100)
    alert_thresholds: AlertThresholds = AlertThresholds()

    model_config = {"frozen": True}


class LoadingConfig(BaseModel):
    max_concurrent_jobs: int = Field(3, ge=1)
    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(5_000, ge=0)
    max_retry_delay_ms: int = Field(300_000, ge=0)
    max_variables_per_call: int = Field(API_MAX_PER_CALL, ge=1, le=API_MAX_PER_CALL)
    api_rate_limit: ApiRateLimit = ApiRateLimit()
    batch_sizes: Dict[GeographyLevel, int] = Field(
        default_factory=lambda: dict(DEFAULT_BATCH_SIZES)
    )
    priorities: Dict[GeographyLevel, int] = Field(
        default_factory=lambda: dict(DEFAULT_PRIORITIES)
    )
    validation: ValidationSettings = ValidationSettings()
    monitoring: MonitoringConfig = MonitoringConfig()

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_tables(self) -> "LoadingConfig":
        for level, size in self.batch_sizes.items():
            if not 1 <= size <= API_MAX_PER_CALL:
                raise ValueError(
                    f"batch size for {level.value} must be between 1 and "
                    f"{API_MAX_PER_CALL}, got {size}"
                )
        for level, priority in self.priorities.items():
            if not 0 <= priority <= 100:
                raise ValueError(
                    f"priority for {level.value} must be between 0 and 100, got {priority}"
                )
        return self

    def batch_size_for(self, level: GeographyLevel) -> int:
        return self.batch_sizes.get(level, DEFAULT_BATCH_SIZES[level])

    def priority_for(self, level: GeographyLevel) -> int:
        return self.priorities.get(level, DEFAULT_PRIORITIES[level])


class Settings(BaseSettings):
    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Upstream statistics provider
    census_api_key: Optional[str] = Field(None, alias="CENSUS_API_KEY")
    fixtures_dir: str = Field("fixtures", alias="FIXTURES_DIR")

    # Persistence
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("census_ingest", alias="DB_NAME")

    # Loading overrides (None = derived default)
    max_concurrent_jobs: Optional[int] = Field(None, alias="MAX_CONCURRENT_JOBS")
    max_retries: Optional[int] = Field(None, alias="MAX_RETRIES")
    retry_delay_ms: Optional[int] = Field(None, alias="RETRY_DELAY_MS")
    daily_limit: Optional[int] = Field(None, alias="API_DAILY_LIMIT")
    burst_limit: Optional[int] = Field(None, alias="API_BURST_LIMIT")
    reserve_for_users: Optional[int] = Field(None, alias="API_RESERVE_FOR_USERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def dsn(self) -> str:
        return (
            f"postgresql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


def _pick(override: Optional[int], fallback: int) -> int:
    return override if override is not None else fallback


def build_loading_config(settings: Optional[Settings] = None) -> LoadingConfig:
    """
    Derive the effective LoadingConfig for the given environment settings.

    An API key raises the upstream budget and concurrency; production keeps a
    larger slice of the daily budget for interactive users and turns strict
    validation on. Explicit overrides from the environment are applied last.
    """
    settings = settings or get_settings()
    defaults = LoadingConfig()

    concurrency = defaults.max_concurrent_jobs
    daily = defaults.api_rate_limit.daily_limit
    burst = defaults.api_rate_limit.burst_limit
    reserve = defaults.api_rate_limit.reserve_for_users
    strict = defaults.validation.strict_mode
    interval = defaults.monitoring.metrics_interval_ms

    if settings.census_api_key:
        daily, burst, concurrency = 10_000, 50, 5

    env = settings.app_env.lower()
    if env == "production":
        strict, reserve, interval = True, 100, 15_000
    elif env == "development":
        strict, reserve, interval = False, 10, 60_000

    overrides = {
        "max_concurrent_jobs": _pick(settings.max_concurrent_jobs, concurrency),
        "max_retries": _pick(settings.max_retries, defaults.max_retries),
        "retry_delay_ms": _pick(settings.retry_delay_ms, defaults.retry_delay_ms),
        "api_rate_limit": ApiRateLimit(
            daily_limit=_pick(settings.daily_limit, daily),
            burst_limit=_pick(settings.burst_limit, burst),
            reserve_for_users=_pick(settings.reserve_for_users, reserve),
        ),
        "validation": ValidationSettings(strict_mode=strict),
        "monitoring": MonitoringConfig(metrics_interval_ms=interval),
    }
    return LoadingConfig(**overrides)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


__all__ = [
    "ApiRateLimit",
    "QualityThresholds",
    "ValidationSettings",
    "AlertThresholds",
    "MonitoringConfig",
    "LoadingConfig",
    "Settings",
    "build_loading_config",
    "get_settings",
    "API_MAX_PER_CALL",
    "DEFAULT_BATCH_SIZES",
    "DEFAULT_PRIORITIES",
]
