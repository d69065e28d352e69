from __future__ import annotations

import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterator, Optional

import typer
from rich.console import Console

from parkbill.config import get_settings
from parkbill.domain.errors import BackendUnavailable, DomainError
from parkbill.domain.models import PaymentMethod, PendingRegisterConflict, VehicleClass
from parkbill.engine import ParkingEngine, RegisterConflict, available_modes, build_engine
from parkbill.infrastructure.db_factory import apply_schema
from parkbill.reporter import (
    print_closures,
    print_conflicts,
    print_debtors,
    print_receipt,
    print_sessions,
    print_tariffs,
    print_till,
)
from parkbill.utils.logging import configure_logging

app = typer.Typer(help="Parking session & billing engine CLI.")
console = Console()

EXIT_DOMAIN_ERROR = 1
EXIT_BACKEND_UNAVAILABLE = 2


@app.callback()
def _root(
    ctx: typer.Context,
    mode: Optional[str] = typer.Option(
        None,
        "--mode",
        "-m",
        help="Store mode (local, backed, auto). Defaults to STORE_MODE.",
    ),
) -> None:
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    ctx.obj = {"mode": mode}


def _engine(ctx: typer.Context) -> ParkingEngine:
    mode = (ctx.obj or {}).get("mode")
    if mode is not None and mode not in available_modes():
        raise typer.BadParameter(f"Unknown mode '{mode}'. Available: {', '.join(available_modes())}")
    return build_engine(mode=mode)


def _decimal(value: Optional[str], name: str) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        parsed = Decimal(value)
    except InvalidOperation as exc:
        raise typer.BadParameter(f"{name} must be a number, got '{value}'") from exc
    if parsed < 0:
        raise typer.BadParameter(f"{name} must not be negative")
    return parsed


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Turn domain failures into a red message and a non-zero exit status."""
    try:
        yield
    except BackendUnavailable as exc:
        console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(EXIT_BACKEND_UNAVAILABLE) from exc
    except DomainError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(EXIT_DOMAIN_ERROR) from exc


@app.command()
def info(ctx: typer.Context) -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    mode = (ctx.obj or {}).get("mode") or settings.store_mode
    rates = " ".join(f"{name}={rate}" for name, rate in settings.default_rates().items())
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"mode={mode} retries={settings.retry_max_attempts} backoff={settings.retry_backoff_seconds}s | "
        f"rates: {rates}"
    )


@app.command("init-db")
def init_db() -> None:
    """
    Create tables and indexes (idempotent).
    """
    apply_schema()
    typer.echo("Schema applied.")


@app.command()
def entry(
    ctx: typer.Context,
    plate: str = typer.Argument("", help="Vehicle plate (may be empty for bicycles)."),
    vehicle_class: VehicleClass = typer.Option(VehicleClass.CAR, "--class", "-c", help="Vehicle class."),
    ticket: Optional[str] = typer.Option(None, "--ticket", "-t", help="Ticket code; generated when omitted."),
    notes: Optional[str] = typer.Option(None, "--notes", help="Observations."),
    replace: Optional[str] = typer.Option(
        None,
        "--replace",
        help="Id of the active session to delete if the plate is already active, then retry.",
    ),
) -> None:
    """
    Register a vehicle entry.
    """
    engine = _engine(ctx)
    with _domain_errors():
        result = engine.register_entry(plate, vehicle_class, notes, ticket)
        if isinstance(result, RegisterConflict) and replace:
            result = engine.resolve_pending(result.pending, replace)
        if isinstance(result, RegisterConflict):
            _report_register_conflict(result.pending, result)
            raise typer.Exit(EXIT_DOMAIN_ERROR)
    session = result.session
    typer.echo(f"Registered {session.plate or '(no plate)'} as {session.vehicle_class.value}: ticket {session.ticket_code}")
    if session.debt:
        console.print(f"[red]Carried debt: {session.debt:,.2f}[/red]")


def _report_register_conflict(pending: PendingRegisterConflict, result: RegisterConflict) -> None:
    console.print(
        f"[yellow]Plate {pending.plate} already has an active session "
        f"({', '.join(pending.blocking_session_ids)}).[/yellow]"
    )
    print_sessions(result.sessions, title=f"Sessions for {pending.plate}", console=console)
    console.print("Re-run with [bold]--replace <session id>[/bold] to delete the stale session and retry.")


@app.command("exit")
def exit_(
    ctx: typer.Context,
    ticket: str = typer.Argument(..., help="Ticket code of the active session."),
    pay: Optional[str] = typer.Option(None, "--pay", help="Partial payment; the rest becomes debt."),
    method: PaymentMethod = typer.Option(PaymentMethod.CASH, "--method", help="Payment method."),
    amount: Optional[str] = typer.Option(None, "--amount", help="Bill this amount instead of the computed fee."),
    tariff: Optional[str] = typer.Option(None, "--tariff", help="Bill with this catalogue tariff id."),
) -> None:
    """
    Check a vehicle out and record its payment.
    """
    engine = _engine(ctx)
    with _domain_errors():
        receipt = engine.process_exit(
            ticket,
            partial_payment=_decimal(pay, "--pay"),
            payment_method=method.value,
            custom_amount=_decimal(amount, "--amount"),
            tariff_id=tariff,
        )
    print_receipt(receipt, console=console)


@app.command()
def quote(
    ctx: typer.Context,
    ticket: str = typer.Argument(..., help="Ticket code of the active session."),
    tariff: Optional[str] = typer.Option(None, "--tariff", help="Quote with this catalogue tariff id."),
) -> None:
    """
    Show what checking out now would cost.
    """
    engine = _engine(ctx)
    with _domain_errors():
        q = engine.quote(ticket, tariff)
        suggested = engine.suggest_tariff(q.session) if tariff is None else None
    typer.echo(
        f"{q.session.plate or '-'} {q.session.vehicle_class.value}: {q.elapsed_minutes} min, "
        f"parking {q.parking_cost:,.2f} + debt {q.debt:,.2f} = {q.owed:,.2f}"
    )
    if suggested is not None:
        typer.echo(f"Catalogue tariff available: {suggested.id} ({suggested.name or suggested.vehicle_class.value})")


@app.command()
def active(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """
    List vehicles currently parked.
    """
    engine = _engine(ctx)
    with _domain_errors():
        page = engine.store.list_active(limit, offset)
    print_sessions(page.items, title=f"Active sessions ({page.total})", console=console)


@app.command()
def day(
    ctx: typer.Context,
    date: Optional[datetime] = typer.Option(None, "--date", "-d", formats=["%Y-%m-%d"], help="UTC day; today by default."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """
    List sessions that entered on a given day.
    """
    engine = _engine(ctx)
    target = date.date() if date else datetime.now(timezone.utc).date()
    with _domain_errors():
        page = engine.store.list_by_date(target, limit, offset)
    print_sessions(page.items, title=f"Entries on {target} ({page.total})", console=console)


@app.command()
def plate(ctx: typer.Context, plate: str = typer.Argument(...)) -> None:
    """
    Show the history of a plate, newest first.
    """
    engine = _engine(ctx)
    with _domain_errors():
        sessions = engine.store.list_by_plate(plate)
    print_sessions(sessions, title=f"History of {plate.strip().upper()}", console=console)


@app.command()
def search(ctx: typer.Context, prefix: str = typer.Argument(...)) -> None:
    """
    Find plates starting with a prefix.
    """
    engine = _engine(ctx)
    with _domain_errors():
        found = engine.search.search(prefix) or []
    print_sessions(found, title=f"Plates matching {prefix.strip().upper()}*", console=console)


@app.command()
def debt(ctx: typer.Context, plate: str = typer.Argument(...)) -> None:
    """
    Show the outstanding debt of a plate.
    """
    engine = _engine(ctx)
    with _domain_errors():
        amount = engine.store.get_plate_debt(plate)
    typer.echo(f"{plate.strip().upper()}: {amount:,.2f}")


@app.command()
def debtors(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """
    List plates with outstanding debt, largest first.
    """
    engine = _engine(ctx)
    with _domain_errors():
        page = engine.store.list_debtors(limit, offset)
        total = engine.store.get_total_debt()
    print_debtors(page.items, total, console=console)


@app.command()
def conflicts(ctx: typer.Context) -> None:
    """
    Scan for plates with inconsistent sessions.
    """
    engine = _engine(ctx)
    with _domain_errors():
        found = engine.conflicts.scan()
    print_conflicts(found, console=console)


@app.command("resolve-conflict")
def resolve_conflict(
    ctx: typer.Context,
    plate: str = typer.Argument(...),
    keep: str = typer.Argument(..., help="Id of the session to keep; every other session of the plate is deleted."),
) -> None:
    """
    Resolve a plate conflict by keeping one session.
    """
    engine = _engine(ctx)
    with _domain_errors():
        engine.conflicts.scan()
        kept = engine.conflicts.resolve(plate, keep)
    typer.echo(f"Kept {kept.id} ({kept.ticket_code}) for {kept.plate}.")


@app.command()
def till(
    ctx: typer.Context,
    date: Optional[datetime] = typer.Option(None, "--date", "-d", formats=["%Y-%m-%d"], help="UTC day; today by default."),
    counted: Optional[str] = typer.Option(None, "--counted", help="Cash counted in the drawer."),
) -> None:
    """
    Show the till for the open shift.
    """
    engine = _engine(ctx)
    with _domain_errors():
        view = engine.treasury.get_treasury(date.date() if date else None, _decimal(counted, "--counted"))
    print_till(view, console=console)


@app.command("close-shift")
def close_shift(
    ctx: typer.Context,
    counted: Optional[str] = typer.Option(None, "--counted", help="Cash counted in the drawer."),
    notes: Optional[str] = typer.Option(None, "--notes"),
) -> None:
    """
    Close the current shift and record the snapshot.
    """
    engine = _engine(ctx)
    with _domain_errors():
        closure = engine.treasury.close_shift(_decimal(counted, "--counted"), notes)
    print_closures([closure], console=console)


@app.command()
def shifts(ctx: typer.Context, limit: int = typer.Option(50, "--limit", "-n")) -> None:
    """
    List past shift closures, newest first.
    """
    engine = _engine(ctx)
    with _domain_errors():
        closures = engine.treasury.list_shift_closures(limit)
    print_closures(closures, console=console)


@app.command()
def tariffs(ctx: typer.Context, search: Optional[str] = typer.Option(None, "--search", "-s")) -> None:
    """
    List catalogue tariffs.
    """
    engine = _engine(ctx)
    with _domain_errors():
        found = engine.store.list_tariffs(search)
    print_tariffs(found, console=console)


@app.command("add-tariff")
def add_tariff(
    ctx: typer.Context,
    vehicle_class: VehicleClass = typer.Argument(...),
    amount: str = typer.Argument(..., help="Amount charged per block."),
    plate: Optional[str] = typer.Option(None, "--plate", help="Restrict to one plate/reference."),
    name: Optional[str] = typer.Option(None, "--name"),
    description: Optional[str] = typer.Option(None, "--description"),
    hours: int = typer.Option(1, "--hours", help="Block length, hours part."),
    minutes: int = typer.Option(0, "--minutes", help="Block length, minutes part."),
) -> None:
    """
    Add a tariff to the catalogue.
    """
    engine = _engine(ctx)
    with _domain_errors():
        tariff = engine.store.create_tariff(
            vehicle_class, _decimal(amount, "amount"), plate, name, description, hours, minutes
        )
    print_tariffs([tariff], console=console)


@app.command("remove-tariff")
def remove_tariff(ctx: typer.Context, tariff_id: str = typer.Argument(...)) -> None:
    """
    Remove a tariff from the catalogue.
    """
    engine = _engine(ctx)
    with _domain_errors():
        engine.store.delete_tariff(tariff_id)
    typer.echo(f"Removed tariff {tariff_id}.")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
