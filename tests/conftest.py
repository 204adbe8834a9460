"""
Pytest configuration for the Census ingest engine.

Provides fixtures for:
- A manual clock so backoff, burst windows and day boundaries never sleep
- Loading configurations, queues and a job factory
- Settings and database connection management for integration tests
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Iterable, Optional

import psycopg
import pytest

from census_ingest.config import ApiRateLimit, LoadingConfig, MonitoringConfig, Settings
from census_ingest.domain.models import GeographyLevel, GeographySpec, Job
from census_ingest.scheduling.job_queue import JobQueue

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def config() -> LoadingConfig:
    """Defaults with a quota large enough that admission is never the bottleneck."""
    return LoadingConfig(
        retry_delay_ms=1_000,
        max_retry_delay_ms=60_000,
        api_rate_limit=ApiRateLimit(daily_limit=10_000, burst_limit=1_000, reserve_for_users=0),
    )


@pytest.fixture
def queue(config: LoadingConfig, clock: ManualClock) -> JobQueue:
    return JobQueue(config, clock=clock)


JobFactory = Callable[..., Job]


@pytest.fixture
def make_job() -> JobFactory:
    def _make(
        job_id: str = "job-1",
        priority: int = 50,
        level: GeographyLevel = GeographyLevel.STATE,
        codes: Iterable[str] = ("06",),
        variables: Iterable[str] = ("B01003_001E",),
        created_at: Optional[datetime] = None,
        **fields,
    ) -> Job:
        return Job(
            id=job_id,
            priority=priority,
            geography=GeographySpec(level=level, codes=set(codes)),
            variables=list(variables),
            created_at=created_at or T0,
            **fields,
        )

    return _make


@pytest.fixture
def scheduler_config() -> LoadingConfig:
    """Immediate retries and a quiet monitor for scheduler runs on a frozen clock."""
    return LoadingConfig(
        max_concurrent_jobs=3,
        max_retries=2,
        retry_delay_ms=0,
        api_rate_limit=ApiRateLimit(daily_limit=10_000, burst_limit=5_000, reserve_for_users=0),
        monitoring=MonitoringConfig(metrics_interval_ms=60_000),
    )


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        _env_file=None,
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "census_ingest"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    return test_settings.dsn


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture(scope="session")
def db_connection(
    test_dsn: str, db_connection_available: bool
) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a session-scoped database connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    conn = psycopg.connect(test_dsn, autocommit=True)
    try:
        yield conn
    finally:
        conn.close()
