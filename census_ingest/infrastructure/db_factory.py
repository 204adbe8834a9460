"""
Database connection factory for the Census ingest engine.

Provides centralized management of the PostgreSQL connection pool used by the
persistence sink. The PoolManager singleton ensures the pool is closed on
application exit.

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import atexit
import threading
from contextlib import contextmanager
from typing import Generator, Optional

import psycopg
from psycopg import Connection
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from census_ingest.config import Settings, get_settings
from census_ingest.utils.logging import get_logger

log = get_logger(__name__)

_CONNECT_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a DSN string from settings."""
    return (settings or get_settings()).dsn


class PoolManager:
    """
    Thread-safe singleton for managing the database connection pool.

    Handles lifecycle management with automatic cleanup via atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        """Create or return the singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool = None
                cls._instance._dsn = None
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_pool(
        self, dsn: Optional[str] = None, min_size: int = 1, max_size: int = 10
    ) -> ConnectionPool:
        """
        Get or create the connection pool.

        Parameters
        ----------
        dsn : str | None
            Connection string; defaults to the one built from settings.
        min_size : int
            Minimum number of idle connections to keep.
        max_size : int
            Maximum total connections in the pool.

        Returns
        -------
        ConnectionPool
            The managed pool instance.
        """
        with self._lock:
            if self._pool is None:
                self._dsn = dsn or build_dsn()
                self._pool = ConnectionPool(
                    conninfo=self._dsn, min_size=min_size, max_size=max_size, open=True
                )
                log.info(
                    "Database pool opened",
                    extra={"min_size": min_size, "max_size": max_size},
                )
            return self._pool

    @contextmanager
    def connection(self) -> Generator[Connection, None, None]:
        """
        Context manager for obtaining a connection from the pool.

        Example
        -------
            manager = PoolManager()
            with manager.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        pool = self.get_pool()
        with pool.connection() as conn:
            yield conn

    def close_all(self) -> None:
        """
        Close the managed pool and release resources.

        This is called automatically on exit via atexit hook.
        """
        with self._lock:
            if self._pool is None:
                return
            try:
                self._pool.close()
            except psycopg.Error as exc:
                log.warning("Error closing database pool", extra={"error": str(exc)})
            finally:
                self._pool = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(_CONNECT_ERRORS),
    reraise=True,
)
def get_connection(dsn: Optional[str] = None) -> Connection:
    """
    Acquire a dedicated connection with automatic retry.

    Retries up to 3 times with exponential backoff for transient connection
    errors. Use this for one-off operations such as schema setup.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(dsn or build_dsn())


def get_pool(min_size: int = 1, max_size: int = 10) -> ConnectionPool:
    """Get or create the shared connection pool via PoolManager."""
    return PoolManager().get_pool(min_size=min_size, max_size=max_size)


__all__ = [
    "PoolManager",
    "build_dsn",
    "get_connection",
    "get_pool",
]
