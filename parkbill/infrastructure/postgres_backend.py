"""
PostgreSQL implementation of the command contract.

Each command runs in its own transaction on a pooled connection. Registrations
for the same plate are serialised with a transaction-scoped advisory lock so
the active-plate check and the debt transfer cannot interleave; the partial
unique index on active ticket codes backs the ticket check.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, List, Optional

from psycopg import errors as pg_errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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
    utc_now,
    validate_exit_amounts,
    validate_registration,
    validate_tariff_terms,
)
from parkbill.tariffs import TariffResolver
from parkbill.utils.logging import get_logger

log = get_logger(__name__)

CLOSURE_LIST_MAX = 200

_SESSION_COLUMNS = (
    "id, ticket_code, plate, vehicle_class, observations, entry_time, exit_time, "
    "status, total_amount, debt, rate_override"
)
_TARIFF_COLUMNS = (
    "id, vehicle_class, scope_key, name, description, amount, block_hours, block_minutes, rate_unit, created_at"
)
_CLOSURE_COLUMNS = (
    "id, closed_at, expected_total, cash_total, card_total, transfer_total, "
    "arqueo_cash, discrepancy, total_transactions, notes"
)
_TARIFF_FIELDS = {"vehicle_class", "amount", "scope_key", "name", "description", "block_hours", "block_minutes"}


def _day_bounds(day: date):
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class PostgresCommandBackend:
    """
    Command backend over a psycopg ConnectionPool.

    Parameters
    ----------
    pool : ConnectionPool
        Managed pool (see ``parkbill.infrastructure.db_factory``).
    resolver : TariffResolver | None
        Computes parking cost at exit.
    clock : callable | None
        Source of timestamps written to the database.
    """

    name = "postgres"

    def __init__(
        self,
        pool: ConnectionPool,
        resolver: Optional[TariffResolver] = None,
        clock: Optional[Callable[[], datetime]] = None,
        default_limit: int = 50,
        max_limit: int = 500,
        search_limit: int = 20,
    ) -> None:
        self._pool = pool
        self._resolver = resolver or TariffResolver()
        self._clock = clock or utc_now
        self._default_limit = default_limit
        self._max_limit = max_limit
        self._search_limit = search_limit

    def _fetch_sessions(self, sql: str, params: tuple = ()) -> List[Session]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, params)
                return [Session(**row) for row in cur.fetchall()]

    def _scalar(self, sql: str, params: tuple = ()):
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
                return row[0] if row else None

    def _session_page(self, where: str, params: tuple, limit: Optional[int], offset: int) -> Page[Session]:
        limit, offset = clamp_page(limit, offset, self._default_limit, self._max_limit)
        total = self._scalar(f"SELECT count(*) FROM public.sessions WHERE {where}", params)
        items = self._fetch_sessions(
            f"SELECT {_SESSION_COLUMNS} FROM public.sessions WHERE {where} "
            "ORDER BY entry_time DESC, id DESC LIMIT %s OFFSET %s",
            params + (limit, offset),
        )
        return Page(items=tuple(items), total=total or 0, limit=limit, offset=offset)

    # ------------------------------------------------------------------ sessions

    def list_active(self, limit: Optional[int] = None, offset: int = 0) -> Page[Session]:
        return self._session_page("status = 'active'", (), limit, offset)

    def list_by_date(self, day: date, limit: Optional[int] = None, offset: int = 0) -> Page[Session]:
        start, end = _day_bounds(day)
        return self._session_page("entry_time >= %s AND entry_time < %s", (start, end), limit, offset)

    def register_entry(
        self,
        plate: Optional[str],
        vehicle_class: VehicleClass,
        observations: Optional[str] = None,
        ticket_code: Optional[str] = None,
    ) -> Session:
        vehicle_class = VehicleClass(vehicle_class)
        normalized, code = validate_registration(plate, vehicle_class, ticket_code)
        try:
            with self._pool.connection() as conn, conn.transaction():
                with conn.cursor(row_factory=dict_row) as cur:
                    if normalized:
                        cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (normalized,))
                    cur.execute(
                        "SELECT 1 FROM public.sessions WHERE ticket_code = %s AND status = 'active'",
                        (code,),
                    )
                    if cur.fetchone():
                        raise TicketAlreadyInUse(code)

                    carried = ZERO
                    if normalized:
                        cur.execute(
                            "SELECT id FROM public.sessions WHERE plate = %s AND status = 'active' "
                            "ORDER BY entry_time",
                            (normalized,),
                        )
                        blocking = [row["id"] for row in cur.fetchall()]
                        if blocking:
                            raise PlateAlreadyActive(normalized, blocking)
                        cur.execute(
                            "WITH prev AS ("
                            "  SELECT id, debt FROM public.sessions WHERE plate = %s AND debt > 0 FOR UPDATE"
                            ") UPDATE public.sessions s SET debt = 0 FROM prev WHERE s.id = prev.id "
                            "RETURNING prev.debt AS debt",
                            (normalized,),
                        )
                        carried = sum((row["debt"] for row in cur.fetchall()), ZERO)

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
                    cur.execute(
                        "INSERT INTO public.sessions (id, ticket_code, plate, vehicle_class, observations, "
                        "entry_time, status, debt) VALUES (%s, %s, %s, %s, %s, %s, 'active', %s)",
                        (
                            session.id,
                            session.ticket_code,
                            session.plate,
                            session.vehicle_class.value,
                            session.observations,
                            session.entry_time,
                            session.debt,
                        ),
                    )
        except pg_errors.UniqueViolation as exc:
            raise TicketAlreadyInUse(code) from exc

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

        with self._pool.connection() as conn, conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_SESSION_COLUMNS} FROM public.sessions "
                    "WHERE ticket_code = %s AND status = 'active' FOR UPDATE",
                    (code,),
                )
                row = cur.fetchone()
                if row is None:
                    raise UnknownTicket(code)
                session = Session(**row)

                now = self._clock()
                minutes, cost = self._resolver.exit_cost(session, now, custom_amount)
                receipt, transaction, overpayment = complete_session(
                    session, now, minutes, cost, partial_payment, method
                )
                cur.execute(
                    "UPDATE public.sessions SET status = 'completed', exit_time = %s, total_amount = %s, debt = %s "
                    "WHERE id = %s",
                    (now, receipt.paid, receipt.session.debt, session.id),
                )
                cur.execute(
                    "INSERT INTO public.transactions (id, session_id, amount, method, created_at) "
                    "VALUES (%s, %s, %s, %s, %s)",
                    (transaction.id, transaction.session_id, transaction.amount, transaction.method.value, now),
                )

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

    def find_by_ticket(self, ticket_code: str) -> Optional[Session]:
        found = self._fetch_sessions(
            f"SELECT {_SESSION_COLUMNS} FROM public.sessions WHERE ticket_code = %s AND status = 'active'",
            ((ticket_code or "").strip(),),
        )
        return found[0] if found else None

    def find_by_plate(self, plate: str) -> Optional[Session]:
        key = normalize_plate(plate)
        if not key:
            return None
        found = self._fetch_sessions(
            f"SELECT {_SESSION_COLUMNS} FROM public.sessions WHERE plate = %s AND status = 'active' "
            "ORDER BY entry_time DESC LIMIT 1",
            (key,),
        )
        return found[0] if found else None

    def list_by_plate(self, plate: str) -> List[Session]:
        key = normalize_plate(plate)
        if not key:
            return []
        return self._fetch_sessions(
            f"SELECT {_SESSION_COLUMNS} FROM public.sessions WHERE plate = %s ORDER BY entry_time DESC, id DESC",
            (key,),
        )

    def search_by_plate_prefix(self, prefix: str, limit: Optional[int] = None) -> List[Session]:
        key = normalize_plate(prefix)
        if not key:
            return []
        effective, _ = clamp_page(limit, 0, self._search_limit, self._max_limit)
        escaped = key.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return self._fetch_sessions(
            f"SELECT * FROM (SELECT DISTINCT ON (plate) {_SESSION_COLUMNS} FROM public.sessions "
            "WHERE plate LIKE %s ORDER BY plate, entry_time DESC, id DESC) latest "
            "ORDER BY entry_time DESC, id DESC LIMIT %s",
            (escaped + "%", effective),
        )

    def get_plate_debt(self, plate: str) -> Decimal:
        key = normalize_plate(plate)
        if not key:
            return ZERO
        return self._scalar("SELECT COALESCE(sum(debt), 0) FROM public.sessions WHERE plate = %s", (key,)) or ZERO

    def delete_session(self, session_id: str) -> None:
        with self._pool.connection() as conn, conn.transaction():
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"DELETE FROM public.sessions WHERE id = %s RETURNING {_SESSION_COLUMNS}",
                    (session_id,),
                )
                row = cur.fetchone()
                if row is None:
                    raise SessionNotFound(session_id)
                removed = Session(**row)
                if removed.is_active and removed.debt > ZERO:
                    cur.execute(
                        "UPDATE public.sessions SET debt = debt + %s WHERE id = ("
                        "  SELECT id FROM public.sessions WHERE plate = %s AND status = 'completed' "
                        "  ORDER BY exit_time DESC, id DESC LIMIT 1"
                        ") RETURNING id",
                        (removed.debt, removed.plate),
                    )
                    if cur.fetchone() is None:
                        log.warning(
                            "Debt dropped with deleted session",
                            extra={"session_id": session_id, "plate": removed.plate, "debt": str(removed.debt)},
                        )
        log.info("Session deleted", extra={"session_id": session_id, "plate": removed.plate})

    def list_debtors(self, limit: Optional[int] = None, offset: int = 0) -> Page[Debtor]:
        limit, offset = clamp_page(limit, offset, self._default_limit, self._max_limit)
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("SELECT count(DISTINCT plate) AS n FROM public.sessions WHERE plate <> '' AND debt > 0")
                total = cur.fetchone()["n"]
                cur.execute(
                    "SELECT plate, sum(debt) AS debt, count(*) AS sessions, max(exit_time) AS last_exit "
                    "FROM public.sessions WHERE plate <> '' AND debt > 0 GROUP BY plate "
                    "ORDER BY sum(debt) DESC, plate LIMIT %s OFFSET %s",
                    (limit, offset),
                )
                items = [Debtor(**row) for row in cur.fetchall()]
        return Page(items=tuple(items), total=total, limit=limit, offset=offset)

    def get_total_debt(self) -> Decimal:
        return self._scalar("SELECT COALESCE(sum(debt), 0) FROM public.sessions") or ZERO

    def list_plate_conflicts(self) -> List[PlateConflict]:
        # Candidate plates are found in SQL; grouping and ordering reuse the shared rule.
        sessions = self._fetch_sessions(
            f"SELECT {_SESSION_COLUMNS} FROM public.sessions WHERE plate IN ("
            "  SELECT plate FROM public.sessions WHERE plate <> '' GROUP BY plate "
            "  HAVING count(*) FILTER (WHERE status = 'active') > 1 OR count(DISTINCT vehicle_class) > 1"
            ")"
        )
        return detect_plate_conflicts(sessions)

    # ------------------------------------------------------------------ tariffs

    def list_tariffs(self, search: Optional[str] = None) -> List[Tariff]:
        sql = f"SELECT {_TARIFF_COLUMNS} FROM public.tariffs"
        params: tuple = ()
        needle = (search or "").strip()
        if needle:
            sql += (
                " WHERE name ILIKE %s OR scope_key ILIKE %s OR description ILIKE %s OR vehicle_class ILIKE %s"
            )
            pattern = f"%{needle}%"
            params = (pattern,) * 4
        sql += " ORDER BY vehicle_class, COALESCE(scope_key, '')"
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, params)
                return [Tariff(**row) for row in cur.fetchall()]

    def _get_tariff(self, cur, tariff_id: str) -> Tariff:
        cur.execute(f"SELECT {_TARIFF_COLUMNS} FROM public.tariffs WHERE id = %s FOR UPDATE", (tariff_id,))
        row = cur.fetchone()
        if row is None:
            raise TariffNotFound(tariff_id)
        return Tariff(**row)

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
        tariff = Tariff(
            id=generate_id(PREFIX_TARIFF),
            vehicle_class=vehicle_class,
            scope_key=normalize_scope_key(scope_key),
            name=name,
            description=description,
            amount=amount,
            block_hours=block_hours,
            block_minutes=block_minutes,
            created_at=self._clock(),
        )
        try:
            with self._pool.connection() as conn, conn.transaction():
                conn.execute(
                    f"INSERT INTO public.tariffs ({_TARIFF_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        tariff.id,
                        tariff.vehicle_class.value,
                        tariff.scope_key,
                        tariff.name,
                        tariff.description,
                        tariff.amount,
                        tariff.block_hours,
                        tariff.block_minutes,
                        tariff.rate_unit.value,
                        tariff.created_at,
                    ),
                )
        except pg_errors.UniqueViolation as exc:
            raise DuplicateTariff(vehicle_class.value, tariff.scope_key) from exc
        log.info("Tariff created", extra={"tariff_id": tariff.id, "vehicle_class": vehicle_class.value})
        return tariff

    def update_tariff(self, tariff_id: str, **changes) -> Tariff:
        unknown = set(changes) - _TARIFF_FIELDS
        if unknown:
            raise InvalidTariff(f"Unknown tariff fields: {', '.join(sorted(unknown))}")
        try:
            with self._pool.connection() as conn, conn.transaction():
                with conn.cursor(row_factory=dict_row) as cur:
                    merged = self._get_tariff(cur, tariff_id).model_dump()
                    merged.update(changes)
                    merged["vehicle_class"] = VehicleClass(merged["vehicle_class"])
                    merged["amount"] = Decimal(merged["amount"])
                    merged["scope_key"] = normalize_scope_key(merged["scope_key"])
                    validate_tariff_terms(merged["amount"], merged["block_hours"], merged["block_minutes"])
                    updated = Tariff(**merged)
                    cur.execute(
                        "UPDATE public.tariffs SET vehicle_class = %s, scope_key = %s, name = %s, description = %s, "
                        "amount = %s, block_hours = %s, block_minutes = %s WHERE id = %s",
                        (
                            updated.vehicle_class.value,
                            updated.scope_key,
                            updated.name,
                            updated.description,
                            updated.amount,
                            updated.block_hours,
                            updated.block_minutes,
                            tariff_id,
                        ),
                    )
        except pg_errors.UniqueViolation as exc:
            raise DuplicateTariff(merged["vehicle_class"].value, merged["scope_key"]) from exc
        log.info("Tariff updated", extra={"tariff_id": tariff_id})
        return updated

    def delete_tariff(self, tariff_id: str) -> None:
        with self._pool.connection() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM public.tariffs WHERE id = %s", (tariff_id,))
            if cur.rowcount == 0:
                raise TariffNotFound(tariff_id)
        log.info("Tariff deleted", extra={"tariff_id": tariff_id})

    # ------------------------------------------------------------------ ledger

    def transactions_between(self, start: datetime, end: datetime) -> List[Transaction]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    "SELECT id, session_id, amount, method, created_at FROM public.transactions "
                    "WHERE created_at >= %s AND created_at < %s ORDER BY created_at, id",
                    (start, end),
                )
                return [Transaction(**row) for row in cur.fetchall()]

    def list_shift_closures(self, limit: int = 50) -> List[ShiftClosure]:
        limit = max(1, min(limit, CLOSURE_LIST_MAX))
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(
                    f"SELECT {_CLOSURE_COLUMNS} FROM public.shift_closures ORDER BY closed_at DESC LIMIT %s",
                    (limit,),
                )
                return [ShiftClosure(**row) for row in cur.fetchall()]

    def append_shift_closure(self, closure: ShiftClosure) -> ShiftClosure:
        with self._pool.connection() as conn, conn.transaction():
            conn.execute(
                f"INSERT INTO public.shift_closures ({_CLOSURE_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s) ON CONFLICT (id) DO NOTHING",
                (
                    closure.id,
                    closure.closed_at,
                    closure.expected_total,
                    closure.cash_total,
                    closure.card_total,
                    closure.transfer_total,
                    closure.arqueo_cash,
                    closure.discrepancy,
                    closure.total_transactions,
                    closure.notes,
                ),
            )
        log.info("Shift closure recorded", extra={"closure_id": closure.id, "discrepancy": str(closure.discrepancy)})
        return closure


__all__ = ["PostgresCommandBackend"]
