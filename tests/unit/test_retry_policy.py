from __future__ import annotations

from datetime import timedelta

import pytest

from census_ingest.config import LoadingConfig
from census_ingest.scheduling.retry import RetryPolicy

from tests.conftest import T0


def test_delay_doubles_from_base():
    policy = RetryPolicy(retry_delay_ms=5_000, max_delay_ms=300_000)
    assert [policy.next_delay(n).total_seconds() for n in range(4)] == [5, 10, 20, 40]


def test_delay_capped():
    policy = RetryPolicy(retry_delay_ms=5_000, max_delay_ms=30_000)
    assert policy.next_delay(10) == timedelta(seconds=30)


def test_should_retry_bounds():
    assert RetryPolicy.should_retry(0, 3)
    assert RetryPolicy.should_retry(2, 3)
    assert not RetryPolicy.should_retry(3, 3)
    assert not RetryPolicy.should_retry(0, 0)


def test_from_config_and_not_before():
    policy = RetryPolicy.from_config(LoadingConfig(retry_delay_ms=250, max_retry_delay_ms=1_000))
    assert policy == RetryPolicy(retry_delay_ms=250, max_delay_ms=1_000)
    assert policy.not_before(T0, 1) == T0 + timedelta(milliseconds=500)


def test_negative_retry_count_rejected():
    with pytest.raises(ValueError):
        RetryPolicy().next_delay(-1)
