"""
Engine wiring: picks the session store for the operating mode and bundles the
components built on top of it.

Usage (example from CLI):
    from parkbill.engine import build_engine

    engine = build_engine()
    result = engine.register_entry("ABC-123", VehicleClass.CAR)

Modes:
- ``local``: in-memory store, nothing survives the process
- ``backed``: PostgreSQL through the retry middleware, with a read cache
- ``auto``: ``backed`` when the database answers, otherwise ``local``
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel

from parkbill.config import Settings, get_settings
from parkbill.conflicts import ConflictResolver
from parkbill.domain.errors import PlateAlreadyActive, TariffNotFound, UnknownTicket
from parkbill.domain.models import (
    ExitReceipt,
    PendingRegisterConflict,
    Session,
    Tariff,
    VehicleClass,
)
from parkbill.domain.rules import utc_now
from parkbill.infrastructure.db_factory import get_pool, probe
from parkbill.infrastructure.postgres_backend import PostgresCommandBackend
from parkbill.infrastructure.retrying import RetryingBackend
from parkbill.stores.abstract import SessionStore
from parkbill.stores.backed import BackedSessionStore
from parkbill.stores.local import LocalSessionStore
from parkbill.stores.search import PrefixSearch
from parkbill.tariffs import TariffResolver, elapsed_minutes
from parkbill.treasury import TreasuryAggregator
from parkbill.utils.logging import get_logger

log = get_logger(__name__)

Clock = Callable[[], datetime]


class Registered(BaseModel):
    session: Session

    model_config = {"frozen": True}


class RegisterConflict(BaseModel):
    """Registration refused because the plate is already active; nothing was written."""

    pending: PendingRegisterConflict
    sessions: Tuple[Session, ...] = ()

    model_config = {"frozen": True}


RegisterResult = Union[Registered, RegisterConflict]


class ExitQuote(BaseModel):
    """What a checkout would cost right now, before any payment."""

    session: Session
    elapsed_minutes: int
    parking_cost: Decimal
    debt: Decimal
    owed: Decimal
    tariff: Optional[Tariff] = None

    model_config = {"frozen": True}


class ParkingEngine:
    """
    Service object handed to every front end.

    Attributes
    ----------
    store : SessionStore
        Authoritative session store for the operating mode.
    tariffs : TariffResolver
        Billing math.
    conflicts : ConflictResolver
        Registration-time and background plate conflicts.
    treasury : TreasuryAggregator
        Till view and shift closures.
    search : PrefixSearch
        Plate autocomplete.
    """

    def __init__(
        self,
        store: SessionStore,
        resolver: Optional[TariffResolver] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.tariffs = resolver or TariffResolver()
        self._clock = clock or utc_now
        self.conflicts = ConflictResolver(store)
        self.treasury = TreasuryAggregator(store, clock=self._clock)
        self.search = PrefixSearch(store)

    @property
    def mode(self) -> str:
        return self.store.name

    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> RegisterResult:
        """
        Register an entry.

        Returns ``Registered`` on success, or ``RegisterConflict`` carrying the
        original arguments when the plate already has an active session. Other
        validation errors propagate.
        """
        try:
            session = self.store.register_entry(plate, vehicle_class, observations, ticket_code)
        except PlateAlreadyActive as exc:
            pending = PendingRegisterConflict(
                plate=plate or "",
                vehicle_class=VehicleClass(vehicle_class),
                observations=observations,
                ticket_code=ticket_code,
                blocking_session_ids=exc.session_ids,
            )
            log.warning(
                "Registration conflict",
                extra={"plate": exc.plate, "blocking": list(exc.session_ids), "ticket": ticket_code},
            )
            return RegisterConflict(pending=pending, sessions=tuple(self.store.list_by_plate(exc.plate)))
        return Registered(session=session)

    def resolve_pending(self, pending: PendingRegisterConflict, delete_id: str) -> RegisterResult:
        """
        Delete ``delete_id`` and retry ``pending``.

        If the plate is still blocked, the conflict comes back refreshed with
        the sessions that block it now.
        """
        try:
            session = self.conflicts.resolve_pending(pending, delete_id)
        except PlateAlreadyActive as exc:
            refreshed = pending.model_copy(update={"blocking_session_ids": exc.session_ids})
            return RegisterConflict(pending=refreshed, sessions=tuple(self.store.list_by_plate(exc.plate)))
        return Registered(session=session)

    def _tariff(self, tariff_id: str) -> Tariff:
        for tariff in self.store.list_tariffs():
            if tariff.id == tariff_id:
                return tariff
        raise TariffNotFound(tariff_id)

    def suggest_tariff(self, session: Session) -> Optional[Tariff]:
        """Catalogue tariff that applies to the session: plate-scoped first, then class default."""
        return self.tariffs.select_tariff(self.store.list_tariffs(), session.vehicle_class, session.plate)

    def quote(self, ticket_code: str, tariff_id: Optional[str] = None) -> ExitQuote:
        session = self.store.find_by_ticket(ticket_code)
        if session is None:
            raise UnknownTicket((ticket_code or "").strip())
        tariff = self._tariff(tariff_id) if tariff_id else None
        now = self._clock()
        cost = self.tariffs.quote(session, now, tariff)
        minutes = elapsed_minutes(session.entry_time, now)
        return ExitQuote(
            session=session,
            elapsed_minutes=minutes,
            parking_cost=cost,
            debt=session.debt,
            owed=cost + session.debt,
            tariff=tariff,
        )

    def process_exit(
        self,
        ticket_code: str,
        partial_payment: Optional[Decimal] = None,
        payment_method: Optional[str] = None,
        custom_amount: Optional[Decimal] = None,
        tariff_id: Optional[str] = None,
    ) -> ExitReceipt:
        """
        Check a vehicle out.

        With ``tariff_id`` the parking cost is quoted from that catalogue tariff
        and billed as a custom amount; ``custom_amount`` wins when both are given.
        """
        if custom_amount is None and tariff_id:
            custom_amount = self.quote(ticket_code, tariff_id).parking_cost
        return self.store.process_exit(ticket_code, partial_payment, payment_method, custom_amount)


def _local_store(settings: Settings, resolver: TariffResolver, clock: Optional[Clock]) -> SessionStore:
    return LocalSessionStore(
        resolver=resolver,
        clock=clock,
        default_limit=settings.list_default_limit,
        max_limit=settings.list_max_limit,
        search_limit=settings.search_limit,
    )


def _backed_store(settings: Settings, resolver: TariffResolver, clock: Optional[Clock]) -> SessionStore:
    backend = PostgresCommandBackend(
        get_pool(settings),
        resolver=resolver,
        clock=clock,
        default_limit=settings.list_default_limit,
        max_limit=settings.list_max_limit,
        search_limit=settings.search_limit,
    )
    retrying = RetryingBackend(
        backend,
        max_attempts=settings.retry_max_attempts,
        backoff_seconds=settings.retry_backoff_seconds,
    )
    return BackedSessionStore(retrying, cache_ttl_seconds=settings.cache_ttl_seconds)


def _store_factories() -> Dict[str, Callable[[Settings, TariffResolver, Optional[Clock]], SessionStore]]:
    """Registry of available store modes."""
    return {
        "local": _local_store,
        "backed": _backed_store,
    }


def available_modes() -> List[str]:
    """List available store modes (``auto`` picks one of them at startup)."""
    return sorted(_store_factories().keys()) + ["auto"]


def _resolve_mode(mode: str, settings: Settings) -> str:
    if mode != "auto":
        return mode
    if probe(settings):
        return "backed"
    log.warning(
        "Database unreachable; running in local mode, data will not persist",
        extra={"host": settings.db_host, "db": settings.db_name},
    )
    return "local"


def build_engine(
    settings: Optional[Settings] = None,
    mode: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> ParkingEngine:
    """
    Construct a ParkingEngine for the configured (or given) store mode.

    Parameters
    ----------
    settings : Settings | None
        Defaults to ``get_settings()``.
    mode : str | None
        ``local``, ``backed`` or ``auto``. Defaults to ``settings.store_mode``.
    clock : callable | None
        Current UTC time; injected by tests.
    """
    settings = settings or get_settings()
    requested = mode or settings.store_mode
    factories = _store_factories()
    resolved = _resolve_mode(requested, settings)
    if resolved not in factories:
        raise ValueError(f"Unknown store mode '{requested}'. Available: {', '.join(available_modes())}")

    resolver = TariffResolver(settings.default_rates())
    store = factories[resolved](settings, resolver, clock)
    log.info("Engine ready", extra={"mode": resolved, "requested": requested})
    return ParkingEngine(store, resolver=resolver, clock=clock)


__all__ = [
    "ExitQuote",
    "ParkingEngine",
    "RegisterConflict",
    "RegisterResult",
    "Registered",
    "available_modes",
    "build_engine",
]
