"""Domain error codes and exceptions for the parking engine.

Three families:

- ``ValidationError`` subclasses: caller-correctable, surfaced verbatim to the
  operator and never retried.
- ``BackendUnavailable``: a transient infrastructure failure that survived every
  retry attempt.
- ``InvariantViolation``: a programming defect (negative amount, completed
  session without exit time, ...). It derives from ``AssertionError`` and not
  from ``DomainError`` so ``except DomainError`` never swallows it.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Sequence


class ErrorCode(Enum):
    """Domain error codes."""

    TICKET_ALREADY_IN_USE = "TICKET_ALREADY_IN_USE"
    PLATE_ALREADY_ACTIVE = "PLATE_ALREADY_ACTIVE"
    PLATE_REQUIRED = "PLATE_REQUIRED"
    TICKET_CODE_EMPTY = "TICKET_CODE_EMPTY"
    UNKNOWN_TICKET = "UNKNOWN_TICKET"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    TARIFF_NOT_FOUND = "TARIFF_NOT_FOUND"
    DUPLICATE_TARIFF = "DUPLICATE_TARIFF"
    INVALID_TARIFF = "INVALID_TARIFF"
    INVALID_PAYMENT = "INVALID_PAYMENT"
    CONFLICT_MISMATCH = "CONFLICT_MISMATCH"
    OPERATION_IN_PROGRESS = "OPERATION_IN_PROGRESS"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Caller-correctable failure; the operator can fix the input and retry."""


class TicketAlreadyInUse(ValidationError):
    """Raised when a ticket code is already held by an active session."""

    def __init__(self, ticket_code: str) -> None:
        super().__init__(
            code=ErrorCode.TICKET_ALREADY_IN_USE,
            message="Ticket code is already in use by an active session",
        )
        self.ticket_code = ticket_code


class PlateAlreadyActive(ValidationError):
    """Raised when a plate already has an active session."""

    def __init__(self, plate: str, session_ids: Sequence[str] = ()) -> None:
        super().__init__(
            code=ErrorCode.PLATE_ALREADY_ACTIVE,
            message="Plate already has an active session",
        )
        self.plate = plate
        self.session_ids = tuple(session_ids)


class PlateRequired(ValidationError):
    """Raised when a plate is missing for a vehicle class that needs one."""

    def __init__(self, vehicle_class: str) -> None:
        super().__init__(
            code=ErrorCode.PLATE_REQUIRED,
            message=f"Plate required for vehicle class {vehicle_class}",
        )
        self.vehicle_class = vehicle_class


class TicketCodeEmpty(ValidationError):
    """Raised when an explicit ticket code is blank."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.TICKET_CODE_EMPTY,
            message="Ticket code is empty",
        )


class UnknownTicket(ValidationError):
    """Raised when no active session holds the ticket code."""

    def __init__(self, ticket_code: str) -> None:
        super().__init__(
            code=ErrorCode.UNKNOWN_TICKET,
            message="No active session for ticket code",
        )
        self.ticket_code = ticket_code


class SessionNotFound(ValidationError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            code=ErrorCode.SESSION_NOT_FOUND,
            message="Session not found",
        )
        self.session_id = session_id


class TariffNotFound(ValidationError):
    def __init__(self, tariff_id: str) -> None:
        super().__init__(
            code=ErrorCode.TARIFF_NOT_FOUND,
            message="Tariff not found",
        )
        self.tariff_id = tariff_id


class DuplicateTariff(ValidationError):
    """Raised when a tariff already exists for the vehicle class and scope."""

    def __init__(self, vehicle_class: str, scope_key: Optional[str]) -> None:
        super().__init__(
            code=ErrorCode.DUPLICATE_TARIFF,
            message="A tariff already exists for this vehicle class and plate (or class default)",
        )
        self.vehicle_class = vehicle_class
        self.scope_key = scope_key


class InvalidTariff(ValidationError):
    def __init__(self, reason: str) -> None:
        super().__init__(code=ErrorCode.INVALID_TARIFF, message=reason)


class InvalidPayment(ValidationError):
    def __init__(self, reason: str) -> None:
        super().__init__(code=ErrorCode.INVALID_PAYMENT, message=reason)


class ConflictMismatch(ValidationError):
    """Raised when the chosen session does not belong to the conflicting plate."""

    def __init__(self, plate: str, session_id: str) -> None:
        super().__init__(
            code=ErrorCode.CONFLICT_MISMATCH,
            message="The chosen session does not belong to that plate",
        )
        self.plate = plate
        self.session_id = session_id


class OperationInProgress(ValidationError):
    """Raised when the same logical command is issued while the first is outstanding."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            code=ErrorCode.OPERATION_IN_PROGRESS,
            message=f"Operation already in progress: {operation}",
        )
        self.operation = operation


class BackendUnavailable(DomainError):
    """Raised when a command keeps failing with transport errors after all retries."""

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(
            code=ErrorCode.BACKEND_UNAVAILABLE,
            message=f"Backend unavailable for {operation} after {attempts} attempt(s)",
        )
        self.operation = operation
        self.attempts = attempts


class InvariantViolation(AssertionError):
    """A broken engine invariant. Never part of normal control flow."""


__all__ = [
    "ErrorCode",
    "DomainError",
    "ValidationError",
    "TicketAlreadyInUse",
    "PlateAlreadyActive",
    "PlateRequired",
    "TicketCodeEmpty",
    "UnknownTicket",
    "SessionNotFound",
    "TariffNotFound",
    "DuplicateTariff",
    "InvalidTariff",
    "InvalidPayment",
    "ConflictMismatch",
    "OperationInProgress",
    "BackendUnavailable",
    "InvariantViolation",
]
