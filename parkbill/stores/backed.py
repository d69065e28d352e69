"""
Session store backed by a durable CommandBackend.

The backend is authoritative; this store keeps a read cache in front of it.

- Every mutation is sent to the backend. Once acknowledged, the cache is
  invalidated and the first page of active sessions is refetched before the
  call returns, so a read issued after a mutation reflects it.
- Reads are cached by command and arguments, optionally for a bounded age.
  A read that started before a mutation finished is returned to its caller
  but never stored (generation check), so stale data cannot repopulate the
  cache.
- A second mutation for the same logical key while the first is outstanding is
  rejected with ``OperationInProgress``.
"""

from __future__ import annotations

import threading
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple

from parkbill.domain.errors import BackendUnavailable, OperationInProgress
from parkbill.domain.models import (
    Debtor,
    ExitReceipt,
    Page,
    PlateConflict,
    Session,
    ShiftClosure,
    Tariff,
    Transaction,
    VehicleClass,
)
from parkbill.domain.rules import normalize_plate
from parkbill.infrastructure.commands import CommandBackend
from parkbill.stores.abstract import AbstractSessionStore
from parkbill.utils.logging import get_logger

log = get_logger(__name__)


class BackedSessionStore(AbstractSessionStore):
    """
    Read-through / write-through cache over a command backend.

    Parameters
    ----------
    backend : CommandBackend
        Usually a ``RetryingBackend`` around ``PostgresCommandBackend``.
    cache_ttl_seconds : float, optional
        Age after which a cached read is refetched, so edits made by other
        terminals show up without a local mutation. ``None`` keeps entries
        until the next invalidation; ``0`` disables caching.
    monotonic : callable
        Time source for entry ages (injectable for tests).
    """

    name = "backed"
    description = "Durable backend with a local read cache"

    def __init__(
        self,
        backend: CommandBackend,
        cache_ttl_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._ttl = cache_ttl_seconds
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._cache: Dict[Tuple[Hashable, ...], Tuple[float, Any]] = {}
        self._generation = 0
        self._inflight: Set[Tuple[str, str]] = set()

    @property
    def backend(self) -> CommandBackend:
        return self._backend

    # ------------------------------------------------------------------ cache

    def _fresh(self, stored_at: float) -> bool:
        return self._ttl is None or self._monotonic() - stored_at < self._ttl

    def _read(self, command: str, *args: Hashable) -> Any:
        key = (command,) + args
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None and self._fresh(entry[0]):
                return entry[1]
            generation = self._generation
        value = getattr(self._backend, command)(*args)
        with self._lock:
            if self._generation == generation:
                self._cache[key] = (self._monotonic(), value)
        return value

    def _invalidate(self) -> None:
        with self._lock:
            self._generation += 1
            self._cache.clear()

    def _resync(self) -> None:
        try:
            self.list_active()
        except BackendUnavailable as exc:
            log.warning("Cache resync after mutation failed", extra={"error": str(exc)})

    def _mutate(self, operation: str, key: str, call: Callable[[], Any]) -> Any:
        guard = (operation, key)
        with self._lock:
            if guard in self._inflight:
                raise OperationInProgress(f"{operation} {key}")
            self._inflight.add(guard)
        try:
            result = call()
        finally:
            # A failed call may still have reached the backend; never trust the cache after one.
            self._invalidate()
            with self._lock:
                self._inflight.discard(guard)
        self._resync()
        return result

    def invalidate(self) -> None:
        """Drop every cached read, e.g. after an external data edit."""
        self._invalidate()

    # ------------------------------------------------------------------ sessions

    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> Session:
        key = normalize_plate(plate) or (ticket_code or "").strip() or "*"
        return self._mutate(
            "register_entry",
            key,
            lambda: self._backend.register_entry(plate, vehicle_class, observations, ticket_code),
        )

    def process_exit(
        self,
        ticket_code: str,
        partial_payment: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
        custom_amount: Optional[Decimal] = None,
    ) -> ExitReceipt:
        return self._mutate(
            "process_exit",
            (ticket_code or "").strip(),
            lambda: self._backend.process_exit(ticket_code, partial_payment, payment_method, custom_amount),
        )

    def delete_session(self, session_id: str) -> None:
        self._mutate("delete_session", session_id, lambda: self._backend.delete_session(session_id))

    def find_by_ticket(self, ticket_code: str) -> Optional[Session]:
        return self._read("find_by_ticket", (ticket_code or "").strip())

    def find_by_plate(self, plate: str) -> Optional[Session]:
        return self._read("find_by_plate", normalize_plate(plate))

    def list_by_plate(self, plate: str) -> List[Session]:
        return self._read("list_by_plate", normalize_plate(plate))

    def search_by_plate_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Session]:
        return self._read("search_by_plate_prefix", normalize_plate(prefix), limit)

    def list_active(self, limit: Optional[int] = None, offset: int = 0) -> Page[Session]:
        return self._read("list_active", limit, offset)

    def list_by_date(self, day: date, limit: Optional[int] = None, offset: int = 0) -> Page[Session]:
        return self._read("list_by_date", day, limit, offset)

    def get_plate_debt(self, plate: str) -> Decimal:
        return self._read("get_plate_debt", normalize_plate(plate))

    def list_debtors(self, limit: Optional[int] = None, offset: int = 0) -> Page[Debtor]:
        return self._read("list_debtors", limit, offset)

    def get_total_debt(self) -> Decimal:
        return self._read("get_total_debt")

    def list_plate_conflicts(self) -> List[PlateConflict]:
        # Conflict scans must see the backend as it is now.
        return self._backend.list_plate_conflicts()

    # ------------------------------------------------------------------ tariffs

    def list_tariffs(self, search: Optional[str] = None) -> List[Tariff]:
        return self._read("list_tariffs", search)

    def create_tariff(
        self,
        vehicle_class: VehicleClass,
        amount: Decimal,
        scope_key: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        block_hours: int = 1,
        block_minutes: int = 0,
    ) -> Tariff:
        key = f"{VehicleClass(vehicle_class).value}:{(scope_key or '').strip().upper()}"
        return self._mutate(
            "create_tariff",
            key,
            lambda: self._backend.create_tariff(
                vehicle_class, amount, scope_key, name, description, block_hours, block_minutes
            ),
        )

    def update_tariff(self, tariff_id: str, **changes) -> Tariff:
        return self._mutate("update_tariff", tariff_id, lambda: self._backend.update_tariff(tariff_id, **changes))

    def delete_tariff(self, tariff_id: str) -> None:
        self._mutate("delete_tariff", tariff_id, lambda: self._backend.delete_tariff(tariff_id))

    # ------------------------------------------------------------------ ledger

    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]:
        return self._read("transactions_between", start, end)

    def list_shift_closures(self, limit: int = 50) -> List[ShiftClosure]:
        return self._read("list_shift_closures", limit)

    def append_shift_closure(self, closure: ShiftClosure) -> ShiftClosure:
        return self._mutate("append_shift_closure", closure.id, lambda: self._backend.append_shift_closure(closure))


__all__ = ["BackedSessionStore"]
