"""
Command contract between the engine and a durable store.

Every call is request/response. Reads and ``delete_session`` are idempotent;
``register_entry``, ``process_exit`` and ``append_shift_closure`` are retried
only on transport failures (see ``parkbill.infrastructure.retrying``).
Validation failures are raised as ``parkbill.domain.errors`` exceptions so the
caller sees the same taxonomy whichever backend is in use.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Protocol, runtime_checkable

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

READ_COMMANDS = frozenset(
    {
        "list_active",
        "list_by_date",
        "find_by_ticket",
        "find_by_plate",
        "list_by_plate",
        "search_by_plate_prefix",
        "get_plate_debt",
        "list_debtors",
        "get_total_debt",
        "list_plate_conflicts",
        "list_tariffs",
        "transactions_between",
        "list_shift_closures",
    }
)

MUTATING_COMMANDS = frozenset(
    {
        "register_entry",
        "process_exit",
        "delete_session",
        "create_tariff",
        "update_tariff",
        "delete_tariff",
        "append_shift_closure",
    }
)


@runtime_checkable
class CommandBackend(Protocol):
    def list_active(self, limit: Optional[int] = None, offset: int = 0) -> Page[Session]: ...

    def list_by_date(self, day: date, limit: Optional[int] = None, offset: int = 0) -> Page[Session]: ...

    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> Session: ...

    def process_exit(
        self,
        ticket_code: str,
        partial_payment: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
        custom_amount: Optional[Decimal] = None,
    ) -> ExitReceipt: ...

    def find_by_ticket(self, ticket_code: str) -> Optional[Session]: ...

    def find_by_plate(self, plate: str) -> Optional[Session]: ...

    def list_by_plate(self, plate: str) -> List[Session]: ...

    def search_by_plate_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Session]: ...

    def get_plate_debt(self, plate: str) -> Decimal: ...

    def delete_session(self, session_id: str) -> None: ...

    def list_debtors(self, limit: Optional[int] = None, offset: int = 0) -> Page[Debtor]: ...

    def get_total_debt(self) -> Decimal: ...

    def list_plate_conflicts(self) -> List[PlateConflict]: ...

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

    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]: ...

    def list_shift_closures(self, limit: int = 50) -> List[ShiftClosure]: ...

    def append_shift_closure(self, closure: ShiftClosure) -> ShiftClosure: ...


__all__ = ["CommandBackend", "READ_COMMANDS", "MUTATING_COMMANDS"]
