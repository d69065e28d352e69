"""
Database connection factory for the parking engine.

Provides a PoolManager singleton around a psycopg_pool ConnectionPool with
lifecycle management (atexit cleanup), plus a one-off connection helper with
tenacity retries used to probe the database at startup.
"""

from __future__ import annotations

import atexit
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import psycopg
from psycopg import Connection
from psycopg.conninfo import make_conninfo
from psycopg_pool import ConnectionPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from parkbill.config import Settings, get_settings
from parkbill.utils.logging import get_logger

log = get_logger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "db" / "init.sql"


def _conninfo(settings: Settings) -> str:
    return make_conninfo(
        settings.dsn,
        connect_timeout=settings.db_connect_timeout_s,
        options=f"-c statement_timeout={settings.db_statement_timeout_ms}",
    )


class PoolManager:
    """
    Thread-safe singleton for managing the database connection pool.

    Handles lifecycle management with automatic cleanup via atexit hook.
    """

    _instance: Optional["PoolManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "PoolManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._pool = None
                atexit.register(cls._instance.close_all)
            return cls._instance

    def get_pool(self, settings: Optional[Settings] = None) -> ConnectionPool:
        """
        Get or create the connection pool.

        Parameters
        ----------
        settings : Settings | None
            Connection and pool sizing settings. Defaults to ``get_settings()``.

        Returns
        -------
        ConnectionPool
            The managed pool instance.
        """
        with self._lock:
            if self._pool is None:
                settings = settings or get_settings()
                self._pool = ConnectionPool(
                    conninfo=_conninfo(settings),
                    min_size=settings.pool_min_size,
                    max_size=settings.pool_max_size,
                    open=True,
                )
                log.info("Connection pool opened", extra={"host": settings.db_host, "db": settings.db_name})
            return self._pool

    @contextmanager
    def connection(self) -> Generator[Connection, None, None]:
        """
        Context manager for obtaining a connection from the pool.

        Example
        -------
            manager = PoolManager()
            with manager.connection() as conn:
                conn.execute("SELECT 1")
        """
        pool = self.get_pool()
        with pool.connection() as conn:
            yield conn

    def close_all(self) -> None:
        """Close the managed pool. Called automatically on exit."""
        with self._lock:
            if self._pool is not None:
                try:
                    self._pool.close()
                except Exception:  # noqa: BLE001 - best-effort cleanup at shutdown
                    log.debug("Pool close failed", exc_info=True)
                finally:
                    self._pool = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((psycopg.OperationalError, psycopg.InterfaceError)),
    reraise=True,
)
def get_connection(settings: Optional[Settings] = None) -> Connection:
    """
    Acquire a dedicated connection with automatic retry.

    Raises
    ------
    psycopg.OperationalError
        If connection fails after all retry attempts.
    """
    return psycopg.connect(_conninfo(settings or get_settings()))


def probe(settings: Optional[Settings] = None) -> bool:
    """True when the database answers ``SELECT 1`` (single attempt, no retries)."""
    settings = settings or get_settings()
    try:
        with psycopg.connect(_conninfo(settings)) as conn:
            conn.execute("SELECT 1")
        return True
    except psycopg.Error as exc:
        log.warning("Database probe failed", extra={"host": settings.db_host, "error": str(exc)})
        return False


def apply_schema(settings: Optional[Settings] = None, schema_path: Path = SCHEMA_PATH) -> None:
    """Execute ``db/init.sql`` against the configured database."""
    sql = schema_path.read_text(encoding="utf-8")
    with get_connection(settings) as conn:
        conn.execute(sql)
        conn.commit()
    log.info("Schema applied", extra={"path": str(schema_path)})


def get_pool(settings: Optional[Settings] = None) -> ConnectionPool:
    return PoolManager().get_pool(settings)


__all__ = [
    "PoolManager",
    "apply_schema",
    "get_connection",
    "get_pool",
    "probe",
]
