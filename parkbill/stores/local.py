"""
In-memory session store, authoritative when no durable backend is reachable.

All state lives in plain dicts guarded by one re-entrant lock; every public
call runs to completion while holding it, so concurrent callers observe
operations in a single total order. Sessions are immutable, so updates replace
the stored instance.
"""

from __future__ import annotations

import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from parkbill.domain.errors import (
    DuplicateTariff,
    InvalidTariff,
    PlateAlreadyActive,
    SessionNotFound,
    TariffNotFound,
    TicketAlreadyInUse,
    UnknownTicket,
)
from parkbill.domain.ids import PREFIX_SESSION, PREFIX_TARIFF, generate_id
from parkbill.domain.models import (
    ZERO,
    Debtor,
    ExitReceipt,
    Page,
    PlateConflict,
    Session,
    SessionStatus,
    ShiftClosure,
    Tariff,
    Transaction,
    VehicleClass,
)
from parkbill.domain.rules import (
    clamp_page,
    coerce_payment_method,
    complete_session,
    detect_plate_conflicts,
    ensure_session_invariants,
    normalize_plate,
    normalize_scope_key,
    summarize_debtors,
    utc_now,
    validate_exit_amounts,
    validate_registration,
    validate_tariff_terms,
)
from parkbill.stores.abstract import AbstractSessionStore
from parkbill.tariffs import TariffResolver
from parkbill.utils.logging import get_logger

log = get_logger(__name__)

CLOSURE_LIST_MAX = 200

_TARIFF_FIELDS = {"vehicle_class", "amount", "scope_key", "name", "description", "block_hours", "block_minutes"}


def _newest_first(sessions: List[Session]) -> List[Session]:
    return sorted(sessions, key=lambda s: (s.entry_time, s.id), reverse=True)


class LocalSessionStore(AbstractSessionStore):
    """
    Memory-only store.

    Parameters
    ----------
    resolver : TariffResolver | None
        Computes parking cost at exit. Defaults to the built-in class rates.
    clock : callable | None
        Returns the current timezone-aware UTC time. Injected by tests.
    default_limit, max_limit, search_limit : int
        Listing limits.
    """

    name = "local"
    description = "In-memory store; data lives only as long as the process"

    def __init__(
        self,
        resolver: Optional[TariffResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_limit: int = 50,
        max_limit: int = 500,
        search_limit: int = 20,
    ) -> None:
        self._resolver = resolver or TariffResolver()
        self._clock = clock or utc_now
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._search_limit = search_limit
        self._lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._tariffs: Dict[str, Tariff] = {}
        self._closures: List[ShiftClosure] = []

    # ------------------------------------------------------------------ sessions

    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> Session:
        vehicle_class = VehicleClass(vehicle_class)
        normalized, code = validate_registration(plate, vehicle_class, ticket_code)
        with self._lock:
            if any(s.is_active and s.ticket_code == code for s in self._sessions.values()):
                raise TicketAlreadyInUse(code)

            carried = ZERO
            if normalized:
                history = [s for s in self._sessions.values() if s.plate == normalized]
                blocking = [s.id for s in history if s.is_active]
                if blocking:
                    raise PlateAlreadyActive(normalized, blocking)
                for previous in history:
                    if previous.debt > ZERO:
                        carried += previous.debt
                        self._sessions[previous.id] = previous.model_copy(update={"debt": ZERO})

            session = ensure_session_invariants(
                Session(
                    id=generate_id(PREFIX_SESSION),
                    ticket_code=code,
                    plate=normalized,
                    vehicle_class=vehicle_class,
                    observations=observations,
                    entry_time=self._clock(),
                    debt=carried,
                )
            )
            self._sessions[session.id] = session

        log.info(
            "Entry registered",
            extra={"ticket": code, "plate": normalized, "vehicle_class": vehicle_class.value, "debt": str(carried)},
        )
        return session

    def process_exit(
        self,
        ticket_code: str,
        partial_payment: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
        custom_amount: Optional[Decimal] = None,
    ) -> ExitReceipt:
        code = (ticket_code or "").strip()
        method, known = coerce_payment_method(payment_method)
        if not known:
            log.warning("Unknown payment method recorded as cash", extra={"ticket": code, "method": payment_method})
        partial_payment, custom_amount = validate_exit_amounts(partial_payment, custom_amount)

        with self._lock:
            session = self._active_by_ticket(code)
            if session is None:
                raise UnknownTicket(code)

            now = self._clock()
            minutes, cost = self._resolver.exit_cost(session, now, custom_amount)
            receipt, transaction, overpayment = complete_session(
                session, now, minutes, cost, partial_payment, method
            )
            self._sessions[session.id] = receipt.session
            self._transactions[transaction.id] = transaction

        if overpayment > ZERO:
            log.warning("Overpayment discarded", extra={"ticket": code, "overpayment": str(overpayment)})
        log.info(
            "Exit processed",
            extra={
                "ticket": code,
                "plate": session.plate,
                "paid": str(receipt.paid),
                "debt": str(receipt.session.debt),
                "method": method.value,
            },
        )
        return receipt

    def _active_by_ticket(self, code: str) -> Optional[Session]:
        for session in self._sessions.values():
            if session.is_active and session.ticket_code == code:
                return session
        return None

    def find_by_ticket(self, ticket_code: str) -> Optional[Session]:
        with self._lock:
            return self._active_by_ticket((ticket_code or "").strip())

    def list_by_plate(self, plate: str) -> List[Session]:
        key = normalize_plate(plate)
        if not key:
            return []
        with self._lock:
            return _newest_first([s for s in self._sessions.values() if s.plate == key])

    def search_by_plate_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Session]:
        """Latest session of every plate starting with ``prefix``, newest first."""
        key = normalize_plate(prefix)
        if not key:
            return []
        effective, _ = clamp_page(limit, 0, self._search_limit, self._max_limit)
        latest: Dict[str, Session] = {}
        with self._lock:
            for session in _newest_first(list(self._sessions.values())):
                if session.plate.startswith(key) and session.plate not in latest:
                    latest[session.plate] = session
        return list(latest.values())[:effective]

    def list_active(self, limit: Optional[int] = None, offset: int = 0) -> Page[Session]:
        limit, offset = clamp_page(limit, offset, self._default_limit, self._max_limit)
        with self._lock:
            active = _newest_first([s for s in self._sessions.values() if s.is_active])
        return self._page(active, limit, offset)

    def list_by_date(self, day: date, limit: Optional[int] = None, offset: int = 0) -> Page[Session]:
        limit, offset = clamp_page(limit, offset, self._default_limit, self._max_limit)
        with self._lock:
            entered = _newest_first(
                [s for s in self._sessions.values() if s.entry_time.astimezone(timezone.utc).date() == day]
            )
        return self._page(entered, limit, offset)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                raise SessionNotFound(session_id)
            for tx_id in [t.id for t in self._transactions.values() if t.session_id == session_id]:
                del self._transactions[tx_id]
            if session.is_active and session.debt > ZERO:
                self._return_debt(session)
        log.info("Session deleted", extra={"session_id": session_id, "plate": session.plate})

    def _return_debt(self, removed: Session) -> None:
        """Hand the debt carried by a removed active session back to the plate's last completed visit."""
        completed = [
            s for s in self._sessions.values() if s.plate == removed.plate and s.status is SessionStatus.COMPLETED
        ]
        if not completed:
            log.warning(
                "Debt dropped with deleted session",
                extra={"session_id": removed.id, "plate": removed.plate, "debt": str(removed.debt)},
            )
            return
        target = max(completed, key=lambda s: (s.exit_time, s.id))
        self._sessions[target.id] = target.model_copy(update={"debt": target.debt + removed.debt})

    def list_debtors(self, limit: Optional[int] = None, offset: int = 0) -> Page[Debtor]:
        limit, offset = clamp_page(limit, offset, self._default_limit, self._max_limit)
        with self._lock:
            debtors = summarize_debtors(list(self._sessions.values()))
        return self._page(debtors, limit, offset)

    def get_total_debt(self) -> Decimal:
        with self._lock:
            return sum((s.debt for s in self._sessions.values()), ZERO)

    def list_plate_conflicts(self) -> List[PlateConflict]:
        with self._lock:
            return detect_plate_conflicts(list(self._sessions.values()))

    # ------------------------------------------------------------------ tariffs

    def list_tariffs(self, search: Optional[str] = None) -> List[Tariff]:
        needle = (search or "").strip().lower()
        with self._lock:
            tariffs = list(self._tariffs.values())
        if needle:
            tariffs = [
                t
                for t in tariffs
                if any(needle in (value or "").lower() for value in (t.name, t.scope_key, t.description, t.vehicle_class.value))
            ]
        return sorted(tariffs, key=lambda t: (t.vehicle_class.value, t.scope_key or ""))

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
        vehicle_class = VehicleClass(vehicle_class)
        amount = Decimal(amount)
        validate_tariff_terms(amount, block_hours, block_minutes)
        scope = normalize_scope_key(scope_key)
        with self._lock:
            self._ensure_tariff_slot_free(vehicle_class, scope)
            tariff = Tariff(
                id=generate_id(PREFIX_TARIFF),
                vehicle_class=vehicle_class,
                scope_key=scope,
                name=name,
                description=description,
                amount=amount,
                block_hours=block_hours,
                block_minutes=block_minutes,
                created_at=self._clock(),
            )
            self._tariffs[tariff.id] = tariff
        log.info("Tariff created", extra={"tariff_id": tariff.id, "vehicle_class": vehicle_class.value, "scope": scope})
        return tariff

    def update_tariff(self, tariff_id: str, **changes) -> Tariff:
        unknown = set(changes) - _TARIFF_FIELDS
        if unknown:
            raise InvalidTariff(f"Unknown tariff fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._tariffs.get(tariff_id)
            if current is None:
                raise TariffNotFound(tariff_id)
            merged = current.model_dump()
            merged.update(changes)
            merged["vehicle_class"] = VehicleClass(merged["vehicle_class"])
            merged["amount"] = Decimal(merged["amount"])
            merged["scope_key"] = normalize_scope_key(merged["scope_key"])
            validate_tariff_terms(merged["amount"], merged["block_hours"], merged["block_minutes"])
            self._ensure_tariff_slot_free(merged["vehicle_class"], merged["scope_key"], exclude=tariff_id)
            updated = Tariff(**merged)
            self._tariffs[tariff_id] = updated
        log.info("Tariff updated", extra={"tariff_id": tariff_id})
        return updated

    def delete_tariff(self, tariff_id: str) -> None:
        with self._lock:
            if self._tariffs.pop(tariff_id, None) is None:
                raise TariffNotFound(tariff_id)
        log.info("Tariff deleted", extra={"tariff_id": tariff_id})

    def _ensure_tariff_slot_free(
        self, vehicle_class: VehicleClass, scope: Optional[str], exclude: Optional[str] = None
    ) -> None:
        for tariff in self._tariffs.values():
            if tariff.id != exclude and tariff.vehicle_class is vehicle_class and tariff.scope_key == scope:
                raise DuplicateTariff(vehicle_class.value, scope)

    # ------------------------------------------------------------------ ledger

    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]:
        with self._lock:
            found = [t for t in self._transactions.values() if start <= t.created_at < end]
        return sorted(found, key=lambda t: (t.created_at, t.id))

    def list_shift_closures(self, limit: int = 50) -> List[ShiftClosure]:
        limit = max(1, min(limit, CLOSURE_LIST_MAX))
        with self._lock:
            closures = sorted(self._closures, key=lambda c: c.closed_at, reverse=True)
        return closures[:limit]

    def append_shift_closure(self, closure: ShiftClosure) -> ShiftClosure:
        with self._lock:
            self._closures.append(closure)
        log.info("Shift closure recorded", extra={"closure_id": closure.id, "discrepancy": str(closure.discrepancy)})
        return closure


__all__ = ["LocalSessionStore", "CLOSURE_LIST_MAX"]
