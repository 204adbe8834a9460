from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from census_ingest.domain.models import JobStatus
from census_ingest.utils.logging import JsonFormatter, _json_formatter, configure_logging

EXPECTED_PRIORITY = 90
EXPECTED_RETRY_COUNT = 2


def _record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_json_formatter_promotes_standard_extra_fields() -> None:
    record = _record()
    record.job_id = "job_abc"
    record.priority = EXPECTED_PRIORITY

    payload = json.loads(_json_formatter(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "test.logger"
    assert payload["message"] == "hello"
    assert payload["job_id"] == "job_abc"
    assert payload["priority"] == EXPECTED_PRIORITY
    assert "pathname" not in payload


def test_json_formatter_supports_nested_extra_field() -> None:
    record = _record()
    record.extra = {"retry_count": EXPECTED_RETRY_COUNT}

    payload = json.loads(_json_formatter(record))

    assert payload["retry_count"] == EXPECTED_RETRY_COUNT


def test_json_formatter_serializes_domain_values() -> None:
    record = _record()
    record.not_before = datetime(2024, 3, 1, tzinfo=timezone.utc)
    record.status = JobStatus.PENDING
    record.job_ids = ("a", "b")

    payload = json.loads(JsonFormatter().format(record))

    assert payload["not_before"] == "2024-03-01T00:00:00+00:00"
    assert payload["status"] == "pending"
    assert payload["job_ids"] == ["a", "b"]


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "test.logger", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
        )

    payload = json.loads(_json_formatter(record))

    assert "RuntimeError: boom" in payload["exc_info"]


def test_configure_logging_respects_force_flag() -> None:
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        configure_logging(level="DEBUG", json_logs=True)
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

        configure_logging(level="WARNING", force=False)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_console_format_has_time_level_and_logger_name() -> None:
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        configure_logging(level="INFO", json_logs=False)
        record = _record("queue ready")
        line = root.handlers[0].formatter.format(record)
        _, level, name, message = line.split(" | ")
        assert (level, name, message) == ("INFO", "test.logger", "queue ready")
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
