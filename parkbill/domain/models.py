"""
Domain models for the parking engine.

Sessions, tariffs, transactions and shift closures are immutable pydantic
models: every state change produces a new instance (``model_copy``) that the
owning store swaps in. Money is ``Decimal``; timestamps are timezone-aware UTC.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

ZERO = Decimal("0")

_FROZEN = {
    "frozen": True,
    "populate_by_name": True,
    "arbitrary_types_allowed": False,
}


class VehicleClass(str, Enum):
    CAR = "car"
    MOTORCYCLE = "motorcycle"
    TRUCK = "truck"
    BICYCLE = "bicycle"

    @property
    def requires_plate(self) -> bool:
        return self is not VehicleClass.BICYCLE


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"


class RateUnit(str, Enum):
    HOUR = "hour"
    MINUTE = "minute"


class Session(BaseModel):
    """
    One parking visit, from entry to exit, identified by its ticket code.
    """

    id: str = Field(..., description="Prefixed session id (VH...).")
    ticket_code: str = Field(..., description="Ticket or barcode presented at the gate.")
    plate: str = Field("", description="Uppercase plate; empty only for bicycles.")
    vehicle_class: VehicleClass
    observations: Optional[str] = None
    entry_time: datetime
    exit_time: Optional[datetime] = None
    status: SessionStatus = SessionStatus.ACTIVE
    total_amount: Optional[Decimal] = Field(None, description="Amount paid at exit.")
    debt: Decimal = Field(ZERO, description="Outstanding balance carried by this session.")
    rate_override: Optional[Decimal] = Field(None, description="Hourly rate replacing the class default.")

    model_config = _FROZEN

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


class Tariff(BaseModel):
    """
    Rate definition: ``amount`` per block of ``block_hours``/``block_minutes``.

    A tariff with a ``scope_key`` applies to that plate/reference only; without
    one it is the class-wide default.
    """

    id: str
    vehicle_class: VehicleClass
    scope_key: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    amount: Decimal = Field(..., ge=0)
    block_hours: int = Field(1, ge=0)
    block_minutes: int = Field(0, ge=0)
    rate_unit: RateUnit = RateUnit.HOUR
    created_at: datetime

    model_config = _FROZEN

    @property
    def block_length_minutes(self) -> int:
        return max(1, self.block_hours * 60 + self.block_minutes)


class Transaction(BaseModel):
    """Payment recorded when a session is checked out."""

    id: str
    session_id: str
    amount: Decimal
    method: PaymentMethod
    created_at: datetime

    model_config = _FROZEN


class PaymentBreakdown(BaseModel):
    cash: Decimal = ZERO
    card: Decimal = ZERO
    transfer: Decimal = ZERO

    model_config = _FROZEN

    @property
    def total(self) -> Decimal:
        return self.cash + self.card + self.transfer


class TillView(BaseModel):
    """Read-only view of the open shift's till."""

    expected_cash: Decimal
    actual_cash: Decimal
    discrepancy: Decimal
    payment_breakdown: PaymentBreakdown
    total_transactions: int
    since: datetime

    model_config = _FROZEN


class ShiftClosure(BaseModel):
    """Immutable snapshot of the till taken when an operator ends a shift."""

    id: str
    closed_at: datetime
    expected_total: Decimal
    cash_total: Decimal
    card_total: Decimal
    transfer_total: Decimal
    arqueo_cash: Optional[Decimal] = Field(None, description="Operator-counted cash.")
    discrepancy: Decimal
    total_transactions: int
    notes: Optional[str] = None

    model_config = _FROZEN


class ExitReceipt(BaseModel):
    """Outcome of a checkout, with the figures printed on the receipt."""

    session: Session
    elapsed_minutes: int
    parking_cost: Decimal
    owed: Decimal = Field(..., description="Parking cost plus carried debt, before payment.")
    paid: Decimal
    method: PaymentMethod

    model_config = _FROZEN


class Page(BaseModel, Generic[T]):
    items: Tuple[T, ...] = ()
    total: int = 0
    limit: int = 0
    offset: int = 0

    model_config = _FROZEN


class Debtor(BaseModel):
    plate: str
    debt: Decimal
    sessions: int
    last_exit: Optional[datetime] = None

    model_config = _FROZEN


class PlateConflict(BaseModel):
    """A plate whose sessions are in an inconsistent state, oldest entry first."""

    plate: str
    sessions: Tuple[Session, ...]

    model_config = _FROZEN

    @property
    def session_ids(self) -> Tuple[str, ...]:
        return tuple(s.id for s in self.sessions)


class PendingRegisterConflict(BaseModel):
    """
    A registration that failed with ``PlateAlreadyActive``.

    Holds the original arguments verbatim so the operator can delete the stale
    session and retry without re-entering anything.
    """

    plate: str
    vehicle_class: VehicleClass
    observations: Optional[str] = None
    ticket_code: Optional[str] = None
    blocking_session_ids: Tuple[str, ...] = ()

    model_config = _FROZEN


__all__ = [
    "ZERO",
    "VehicleClass",
    "SessionStatus",
    "PaymentMethod",
    "RateUnit",
    "Session",
    "Tariff",
    "Transaction",
    "PaymentBreakdown",
    "TillView",
    "ShiftClosure",
    "ExitReceipt",
    "Page",
    "Debtor",
    "PlateConflict",
    "PendingRegisterConflict",
]
