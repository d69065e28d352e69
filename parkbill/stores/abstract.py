"""
Session store interfaces for the parking engine.

A SessionStore is the authoritative view of sessions for the current operating
mode. ``LocalSessionStore`` keeps everything in memory; ``BackedSessionStore``
caches a CommandBackend. Engine code is written against ``SessionStore`` only,
so both implementations must satisfy the same invariants and raise the same
domain errors.
"""

from __future__ import annotations

import abc
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence, runtime_checkable

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


@runtime_checkable
class SessionStore(Protocol):
    """
    Common interface of every session store.

    Attributes
    ----------
    name : str
        Short machine-friendly identifier of the mode (``local``, ``backed``).
    description : str
        Human-friendly summary of where the data lives.
    """

    name: str
    description: str

    # Sessions
    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> Session:
        """
        Create an active session.

        Raises
        ------
        TicketCodeEmpty, PlateRequired, TicketAlreadyInUse, PlateAlreadyActive
        """
        ...

    def process_exit(
        self,
        ticket_code: str,
        partial_payment: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
        custom_amount: Optional[Decimal] = None,
    ) -> ExitReceipt:
        """
        Complete the active session holding ``ticket_code`` and record its payment.

        Raises
        ------
        UnknownTicket
        """
        ...

    def find_by_ticket(self, ticket_code: str) -> Optional[Session]: ...

    def find_by_plate(self, plate: str) -> Optional[Session]: ...

    def list_by_plate(self, plate: str) -> List[Session]: ...

    def search_by_plate_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Session]: ...

    def list_active(self, limit: Optional[int] = None, offset: int = 0) -> Page[Session]: ...

    def list_by_date(self, day: date, limit: Optional[int] = None, offset: int = 0) -> Page[Session]: ...

    def get_plate_debt(self, plate: str) -> Decimal: ...

    def delete_session(self, session_id: str) -> None: ...

    def list_debtors(self, limit: Optional[int] = None, offset: int = 0) -> Page[Debtor]: ...

    def get_total_debt(self) -> Decimal: ...

    def list_plate_conflicts(self) -> List[PlateConflict]: ...

    # Tariff catalogue
    def list_tariffs(self, search: Optional[str] = None) -> List[Tariff]: ...

    def create_tariff(
        self,
        vehicle_class: VehicleClass,
        amount: Decimal,
        scope_key: Optional[str] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        block_hours: int = 1,
        block_minutes: int = 0,
    ) -> Tariff: ...

    def update_tariff(self, tariff_id: str, **changes) -> Tariff: ...

    def delete_tariff(self, tariff_id: str) -> None: ...

    # Ledger
    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]: ...

    def list_shift_closures(self, limit: int = 50) -> List[ShiftClosure]: ...

    def append_shift_closure(self, closure: ShiftClosure) -> ShiftClosure: ...


class AbstractSessionStore(abc.ABC):
    """
    ABC helper for class-based stores.

    Subclasses set ``name`` and ``description`` and implement the session
    commands; the derived queries below are shared.
    """

    name: str
    description: str

    @abc.abstractmethod
    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> Session:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def process_exit(
        self,
        ticket_code: str,
        partial_payment: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
        custom_amount: Optional[Decimal] = None,
    ) -> ExitReceipt:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def list_by_plate(self, plate: str) -> List[Session]:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def list_active(
        self, limit: Optional[int] = None, offset: int = 0
    ) -> Page[Session]:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def delete_session(self, session_id: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def find_by_plate(self, plate: str) -> Optional[Session]:
        active = [s for s in self.list_by_plate(plate) if s.is_active]
        return active[0] if active else None

    def get_plate_debt(self, plate: str) -> Decimal:
        return sum((s.debt for s in self.list_by_plate(plate)), Decimal("0"))

    @staticmethod
    def _page(items: Sequence, limit: int, offset: int) -> Page:
        return Page(items=tuple(items[offset : offset + limit]), total=len(items), limit=limit, offset=offset)


__all__ = [
    "SessionStore",
    "AbstractSessionStore",
]
