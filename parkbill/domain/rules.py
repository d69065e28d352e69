"""
Business rules shared by every SessionStore and CommandBackend implementation.

Keeping them here means the in-memory store and the PostgreSQL backend agree
on normalisation, validation order, settlement and conflict detection.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from parkbill.domain.errors import (
    InvalidPayment,
    InvalidTariff,
    InvariantViolation,
    PlateRequired,
    TicketCodeEmpty,
)
from parkbill.domain.ids import PREFIX_TRANSACTION, generate_id, generate_ticket_code
from parkbill.domain.models import (
    ZERO,
    Debtor,
    ExitReceipt,
    PaymentMethod,
    PlateConflict,
    Session,
    SessionStatus,
    Transaction,
    VehicleClass,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_plate(plate: Optional[str]) -> str:
    return (plate or "").strip().upper()


def normalize_scope_key(scope_key: Optional[str]) -> Optional[str]:
    key = (scope_key or "").strip().upper()
    return key or None


def validate_tariff_terms(amount: Decimal, block_hours: int, block_minutes: int) -> None:
    if amount < ZERO:
        raise InvalidTariff("Tariff amount must not be negative")
    if block_hours < 0 or block_minutes < 0:
        raise InvalidTariff("Block hours and minutes must not be negative")
    if block_hours * 60 + block_minutes < 1:
        raise InvalidTariff("Tariff block must be at least one minute")


def validate_exit_amounts(
    partial_payment: Optional[Decimal], custom_amount: Optional[Decimal]
) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """Coerce exit amounts to ``Decimal`` and reject negative ones."""
    if partial_payment is not None:
        partial_payment = Decimal(str(partial_payment))
        if partial_payment < ZERO:
            raise InvalidPayment("Partial payment must not be negative")
    if custom_amount is not None:
        custom_amount = Decimal(str(custom_amount))
        if custom_amount < ZERO:
            raise InvalidTariff("Custom amount must not be negative")
    return partial_payment, custom_amount


def resolve_ticket_code(ticket_code: Optional[str]) -> str:
    """Return the trimmed explicit code, or a fresh one when none was given."""
    if ticket_code is None:
        return generate_ticket_code()
    code = ticket_code.strip()
    if not code:
        raise TicketCodeEmpty()
    return code


def validate_registration(
    plate: Optional[str], vehicle_class: VehicleClass, ticket_code: Optional[str]
) -> Tuple[str, str]:
    """
    Normalise and validate registration input.

    Returns ``(plate, ticket_code)``. Checks run in a fixed order (ticket code,
    then plate) so both store modes report the same error for the same input.
    """
    code = resolve_ticket_code(ticket_code)
    normalized = normalize_plate(plate)
    if vehicle_class.requires_plate and not normalized:
        raise PlateRequired(vehicle_class.value)
    return normalized, code


def settle(owed: Decimal, partial_payment: Optional[Decimal]) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Split what is owed into ``(paid, remaining_debt, overpayment)``.

    A partial payment below ``owed`` leaves the difference as debt. Anything at
    or above ``owed`` clears the debt; the excess is reported as overpayment and
    is not credited anywhere.
    """
    if owed < ZERO:
        raise InvariantViolation(f"negative amount owed: {owed}")
    if partial_payment is not None and partial_payment < owed:
        if partial_payment < ZERO:
            raise InvariantViolation(f"negative partial payment: {partial_payment}")
        return partial_payment, owed - partial_payment, ZERO
    overpayment = ZERO if partial_payment is None else partial_payment - owed
    return owed, ZERO, overpayment


def complete_session(
    session: Session,
    at: datetime,
    minutes: int,
    cost: Decimal,
    partial_payment: Optional[Decimal],
    method: PaymentMethod,
) -> Tuple[ExitReceipt, Transaction, Decimal]:
    """
    Check ``session`` out at ``at`` for ``cost`` plus the debt it carries.

    Returns the receipt (holding the completed session), the payment
    transaction and any discarded overpayment.
    """
    owed = cost + session.debt
    paid, debt, overpayment = settle(owed, partial_payment)
    completed = ensure_session_invariants(
        session.model_copy(
            update={
                "status": SessionStatus.COMPLETED,
                "exit_time": at,
                "total_amount": paid,
                "debt": debt,
            }
        )
    )
    transaction = Transaction(
        id=generate_id(PREFIX_TRANSACTION),
        session_id=session.id,
        amount=paid,
        method=method,
        created_at=at,
    )
    receipt = ExitReceipt(
        session=completed,
        elapsed_minutes=minutes,
        parking_cost=cost,
        owed=owed,
        paid=paid,
        method=method,
    )
    return receipt, transaction, overpayment


def coerce_payment_method(value: Optional[str]) -> Tuple[PaymentMethod, bool]:
    """Map free-form input to a method; unknown values fall back to cash (flag False)."""
    if value is None or not value.strip():
        return PaymentMethod.CASH, True
    try:
        return PaymentMethod(value.strip().lower()), True
    except ValueError:
        return PaymentMethod.CASH, False


def clamp_page(limit: Optional[int], offset: Optional[int], default: int, maximum: int) -> Tuple[int, int]:
    effective = default if limit is None else limit
    return max(1, min(effective, maximum)), max(0, offset or 0)


def ensure_session_invariants(session: Session) -> Session:
    """Fail loudly if a session breaks a lifecycle or money invariant."""
    completed = session.status is SessionStatus.COMPLETED
    if completed != (session.exit_time is not None):
        raise InvariantViolation(f"session {session.id}: exit_time must be set iff completed")
    if completed and session.total_amount is None:
        raise InvariantViolation(f"session {session.id}: completed without total_amount")
    if session.exit_time is not None and session.exit_time < session.entry_time:
        raise InvariantViolation(f"session {session.id}: exit before entry")
    if session.debt < ZERO:
        raise InvariantViolation(f"session {session.id}: negative debt {session.debt}")
    if session.total_amount is not None and session.total_amount < ZERO:
        raise InvariantViolation(f"session {session.id}: negative total {session.total_amount}")
    return session


def sort_oldest_first(sessions: Iterable[Session]) -> List[Session]:
    return sorted(sessions, key=lambda s: (s.entry_time, s.id))


def detect_plate_conflicts(sessions: Iterable[Session]) -> List[PlateConflict]:
    """
    Plates with more than one active session, or with sessions of more than one
    vehicle class. Each conflict lists every session of the plate, oldest first;
    conflicts are ordered by their oldest session.
    """
    by_plate: Dict[str, List[Session]] = defaultdict(list)
    for session in sessions:
        if session.plate:
            by_plate[session.plate.upper()].append(session)

    conflicts = []
    for plate, plate_sessions in by_plate.items():
        active = sum(1 for s in plate_sessions if s.is_active)
        classes = {s.vehicle_class for s in plate_sessions}
        if active > 1 or len(classes) > 1:
            conflicts.append(PlateConflict(plate=plate, sessions=tuple(sort_oldest_first(plate_sessions))))
    conflicts.sort(key=lambda c: (c.sessions[0].entry_time, c.plate))
    return conflicts


def summarize_debtors(sessions: Iterable[Session]) -> List[Debtor]:
    """Plates with outstanding debt, largest debt first."""
    totals: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    counts: Dict[str, int] = defaultdict(int)
    last_exit: Dict[str, Optional[object]] = {}
    for session in sessions:
        if not session.plate or session.debt <= ZERO:
            continue
        totals[session.plate] += session.debt
        counts[session.plate] += 1
        previous = last_exit.get(session.plate)
        if session.exit_time is not None and (previous is None or session.exit_time > previous):
            last_exit[session.plate] = session.exit_time
    debtors = [
        Debtor(plate=plate, debt=debt, sessions=counts[plate], last_exit=last_exit.get(plate))
        for plate, debt in totals.items()
    ]
    debtors.sort(key=lambda d: (-d.debt, d.plate))
    return debtors


__all__ = [
    "utc_now",
    "normalize_plate",
    "normalize_scope_key",
    "validate_tariff_terms",
    "validate_exit_amounts",
    "resolve_ticket_code",
    "validate_registration",
    "settle",
    "complete_session",
    "coerce_payment_method",
    "clamp_page",
    "ensure_session_invariants",
    "sort_oldest_first",
    "detect_plate_conflicts",
    "summarize_debtors",
]
