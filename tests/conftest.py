"""
Pytest configuration for the parking engine.

Provides fixtures for:
- Settings overrides
- A controllable clock
- In-memory stores and engines
- A fake command backend with call counting and failure injection
- PostgreSQL connectivity for integration tests
"""

from __future__ import annotations

import os
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List

import psycopg
import pytest

from parkbill.config import Settings
from parkbill.engine import ParkingEngine
from parkbill.stores.local import LocalSessionStore

START = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeBackend:
    """
    Command backend that delegates to an in-memory store.

    Counts calls per command and raises queued failures before delegating,
    so tests can simulate a flaky transport.
    """

    def __init__(self, inner: LocalSessionStore) -> None:
        self.inner = inner
        self.calls: Counter = Counter()
        self._failures: Dict[str, List[BaseException]] = {}

    def fail(self, command: str, *errors: BaseException) -> None:
        self._failures.setdefault(command, []).extend(errors)

    def __getattr__(self, name: str) -> Any:
        target = getattr(self.inner, name)
        if name.startswith("_") or not callable(target):
            return target

        def call(*args: Any, **kwargs: Any) -> Any:
            self.calls[name] += 1
            queued = self._failures.get(name)
            if queued:
                raise queued.pop(0)
            return target(*args, **kwargs)

        return call


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "parkbill_test"),
        store_mode="local",
        log_level="DEBUG",
        retry_backoff_seconds=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def local_store(clock: FakeClock) -> LocalSessionStore:
    return LocalSessionStore(clock=clock)


@pytest.fixture
def engine(local_store: LocalSessionStore, clock: FakeClock) -> ParkingEngine:
    return ParkingEngine(local_store, clock=clock)


@pytest.fixture
def fake_backend(local_store: LocalSessionStore) -> FakeBackend:
    return FakeBackend(local_store)


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
            conn.execute("SELECT 1")
        return True
    except psycopg.Error:
        return False


@pytest.fixture(scope="session")
def db_schema_initialized(test_settings: Settings, db_connection_available: bool) -> bool:
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")
    from parkbill.infrastructure.db_factory import apply_schema

    apply_schema(test_settings)
    return True


@pytest.fixture
def clean_tables(test_dsn: str, db_schema_initialized: bool) -> Generator[None, None, None]:
    """Empty every table before and after the test."""
    statement = "TRUNCATE public.transactions, public.sessions, public.tariffs, public.shift_closures CASCADE"
    with psycopg.connect(test_dsn) as conn:
        conn.execute(statement)
    yield
    with psycopg.connect(test_dsn) as conn:
        conn.execute(statement)
