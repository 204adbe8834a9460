"""
Result sinks: where accepted batches go.

The scheduler hands every accepted batch to a ``ResultSink`` as
``persist(job, result, records)`` and counts the return value as records
loaded. Any exception escaping ``persist`` is reported as a transient job
failure, so sinks must be idempotent under retry; both sinks here upsert on
``(dataset, year, geography_level, geography_code)``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import psycopg
from psycopg import sql
from psycopg.types.json import Jsonb

from census_ingest.domain.models import Job, ValidationResult, utc_now
from census_ingest.errors import TransientError
from census_ingest.infrastructure.db_factory import PoolManager
from census_ingest.providers.abstract import Record
from census_ingest.utils.logging import get_logger

log = get_logger(__name__)

RecordKey = Tuple[str, str, str, str]
KEY_FIELDS = ("dataset", "year", "geography_level", "geography_code")


def record_key(job: Job, record: Record) -> Optional[RecordKey]:
    """Natural key of a record, falling back to the job's dataset/year/level."""
    code = record.get("geography_code")
    if code is None or str(code).strip() == "":
        return None
    return (
        str(record.get("dataset") or job.dataset),
        str(record.get("year") or job.year),
        str(record.get("geography_level") or job.geography.level.value),
        str(code),
    )


@runtime_checkable
class ResultSink(Protocol):
    def persist(
        self, job: Job, result: Optional[ValidationResult], records: Sequence[Record]
    ) -> int:
        """Store ``records`` for ``job``; return how many were written."""
        ...


@dataclass
class PersistedBatch:
    job_id: str
    result: Optional[ValidationResult]
    records: List[Record]
    persisted_at: datetime = field(default_factory=utc_now)


class MemorySink:
    """In-process sink for dry runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.batches: List[PersistedBatch] = []
        self.rows: Dict[RecordKey, Record] = {}

    def persist(
        self, job: Job, result: Optional[ValidationResult], records: Sequence[Record]
    ) -> int:
        written = 0
        with self._lock:
            self.batches.append(PersistedBatch(job.id, result, [dict(r) for r in records]))
            for record in records:
                key = record_key(job, record)
                if key is None:
                    continue
                self.rows.setdefault(key, {}).update(record)
                written += 1
        return written

    def records_for(self, job_id: str) -> List[Record]:
        with self._lock:
            return [r for batch in self.batches if batch.job_id == job_id for r in batch.records]

    def __len__(self) -> int:
        with self._lock:
            return len(self.rows)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    dataset          TEXT NOT NULL,
    year             TEXT NOT NULL,
    geography_level  TEXT NOT NULL,
    geography_code   TEXT NOT NULL,
    name             TEXT,
    payload          JSONB NOT NULL DEFAULT '{{}}'::jsonb,
    job_id           TEXT,
    quality_score    DOUBLE PRECISION,
    loaded_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (dataset, year, geography_level, geography_code)
)
"""

_UPSERT = """
INSERT INTO {table}
    (dataset, year, geography_level, geography_code, name, payload, job_id, quality_score)
VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
ON CONFLICT (dataset, year, geography_level, geography_code) DO UPDATE SET
    name = COALESCE(EXCLUDED.name, {table}.name),
    payload = {table}.payload || EXCLUDED.payload,
    job_id = EXCLUDED.job_id,
    quality_score = EXCLUDED.quality_score,
    loaded_at = now()
"""


class PostgresSink:
    """
    Upserts records into ``census_records`` (or ``table``).

    Variable values go into the JSONB ``payload`` column and are merged on
    conflict, so jobs covering different variable chunks of the same areas
    accumulate into one row per area.
    """

    def __init__(self, pool_manager: Optional[PoolManager] = None, table: str = "census_records"):
        self.pool_manager = pool_manager or PoolManager()
        self.table = table

    def _sql(self, template: str) -> sql.Composed:
        return sql.SQL(template).format(table=sql.Identifier(self.table))

    def ensure_schema(self) -> None:
        with self.pool_manager.connection() as conn:
            conn.execute(self._sql(_SCHEMA))
        log.info(f"Ensured table {self.table}", extra={"table": self.table})

    def _rows(
        self, job: Job, result: Optional[ValidationResult], records: Sequence[Record]
    ) -> List[Tuple[Any, ...]]:
        score = result.score if result is not None else None
        rows = []
        for record in records:
            key = record_key(job, record)
            if key is None:
                continue
            payload = {k: v for k, v in record.items() if k not in KEY_FIELDS and k != "name"}
            rows.append((*key, record.get("name"), Jsonb(payload), job.id, score))
        return rows

    def persist(
        self, job: Job, result: Optional[ValidationResult], records: Sequence[Record]
    ) -> int:
        rows = self._rows(job, result, records)
        if not rows:
            return 0
        try:
            with self.pool_manager.connection() as conn:
                with conn.cursor() as cur:
                    cur.executemany(self._sql(_UPSERT), rows)
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise TransientError(f"Database unavailable: {exc}", job_id=job.id) from exc
        log.debug(
            f"Persisted {len(rows)} records",
            extra={"job_id": job.id, "table": self.table, "rows": len(rows)},
        )
        return len(rows)


__all__ = [
    "KEY_FIELDS",
    "MemorySink",
    "PersistedBatch",
    "PostgresSink",
    "ResultSink",
    "record_key",
]
