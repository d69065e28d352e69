"""
parkbill - Parking session & billing engine.

Decides what a ticket/plate pair currently means, how much is owed, how debt
carries across visits, and how a shift's cash is reconciled:

- Tariff computation (class rates, per-session overrides, custom tariffs)
- Session lifecycle over an in-memory or PostgreSQL-backed store
- Plate conflict detection and resolution
- Till view and shift closures

The engine keeps working when the database is unreachable by degrading to an
in-memory store with the same invariants and errors.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from parkbill.config import Settings, get_settings
from parkbill.domain.errors import BackendUnavailable, DomainError, InvariantViolation, ValidationError
from parkbill.engine import (
    ParkingEngine,
    RegisterConflict,
    Registered,
    available_modes,
    build_engine,
)
from parkbill.stores.abstract import AbstractSessionStore, SessionStore
from parkbill.tariffs import TariffResolver
from parkbill.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Engine
    "ParkingEngine",
    "Registered",
    "RegisterConflict",
    "available_modes",
    "build_engine",
    # Store abstractions
    "SessionStore",
    "AbstractSessionStore",
    "TariffResolver",
    # Errors
    "DomainError",
    "ValidationError",
    "BackendUnavailable",
    "InvariantViolation",
    # Logging
    "configure_logging",
    "get_logger",
]
