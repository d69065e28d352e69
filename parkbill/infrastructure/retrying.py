"""
Retry middleware around a CommandBackend.

``RetryingBackend`` wraps every command of the inner backend (the names in
``READ_COMMANDS`` and ``MUTATING_COMMANDS``) with a
tenacity retry policy: transport failures are retried up to ``max_attempts``
times with linear backoff (``backoff``, ``2 * backoff``, ...). Domain errors
pass through after the first attempt. When attempts run out the caller gets
``BackendUnavailable`` chained to the last transport error.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Optional

import psycopg
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from parkbill.domain.errors import BackendUnavailable, DomainError
from parkbill.infrastructure.commands import MUTATING_COMMANDS, READ_COMMANDS
from parkbill.utils.logging import get_logger

log = get_logger(__name__)

_TRANSIENT_TYPES = (
    psycopg.OperationalError,
    psycopg.InterfaceError,
    ConnectionError,
    TimeoutError,
)

_TRANSIENT_MARKERS = ("connection", "timeout", "timed out", "network", "unavailable", "econnreset", "econnrefused")

_COMMANDS = READ_COMMANDS | MUTATING_COMMANDS


def is_transient(exc: BaseException) -> bool:
    """True for failures worth retrying: transport errors, never domain errors."""
    if isinstance(exc, DomainError):
        return False
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class RetryingBackend:
    """
    Decorates a backend so business code never contains retry loops.

    Parameters
    ----------
    inner : CommandBackend
        The backend to call.
    max_attempts : int
        Total attempts per command, first call included.
    backoff_seconds : float
        Base delay; attempt ``n`` waits ``n * backoff_seconds`` before retrying.
    retryable : callable | None
        Predicate deciding whether an exception is transient. Defaults to ``is_transient``.
    sleep : callable | None
        Sleep function, injectable for tests.
    """

    def __init__(
        self,
        inner: Any,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        retryable: Optional[Callable[[BaseException], bool]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._inner = inner
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff_seconds
        self._retryable = retryable or is_transient
        self._sleep = sleep

    @property
    def inner(self) -> Any:
        return self._inner

    def _retrying(self) -> Retrying:
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return Retrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_incrementing(start=self._backoff, increment=self._backoff),
            retry=retry_if_exception(self._retryable),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=False,
            **kwargs,
        )

    def call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return self._retrying()(fn, *args, **kwargs)
        except RetryError as exc:
            last = exc.last_attempt.exception()
            log.error(
                "Backend command failed after retries",
                extra={"operation": operation, "attempts": exc.last_attempt.attempt_number, "error": str(last)},
            )
            raise BackendUnavailable(operation, exc.last_attempt.attempt_number) from last

    def __getattr__(self, name: str) -> Any:
        target = getattr(self._inner, name)
        if name not in _COMMANDS or not callable(target):
            return target

        @functools.wraps(target)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return self.call(name, target, *args, **kwargs)

        return wrapper


__all__ = ["RetryingBackend", "is_transient"]
