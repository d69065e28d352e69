"""Domain layer: immutable models, error taxonomy and shared business rules."""

from parkbill.domain.errors import (
    BackendUnavailable,
    DomainError,
    ErrorCode,
    InvariantViolation,
    ValidationError,
)
from parkbill.domain.models import (
    Page,
    PaymentMethod,
    Session,
    SessionStatus,
    Tariff,
    VehicleClass,
)

__all__ = [
    "BackendUnavailable",
    "DomainError",
    "ErrorCode",
    "InvariantViolation",
    "ValidationError",
    "Page",
    "PaymentMethod",
    "Session",
    "SessionStatus",
    "Tariff",
    "VehicleClass",
]
