"""
Infrastructure package for the Census ingest engine.

Centralizes persistence concerns (connection pooling, result sinks). Keep this
layer focused on I/O and resource management, decoupled from queue and
scheduler logic.
"""

from census_ingest.infrastructure.db_factory import (
    PoolManager,
    build_dsn,
    get_connection,
    get_pool,
)
from census_ingest.infrastructure.persistence import (
    MemorySink,
    PersistedBatch,
    PostgresSink,
    ResultSink,
)

__all__ = [
    "PoolManager",
    "build_dsn",
    "get_connection",
    "get_pool",
    "MemorySink",
    "PersistedBatch",
    "PostgresSink",
    "ResultSink",
]
