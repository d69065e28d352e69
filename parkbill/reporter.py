from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from parkbill.domain.models import (
    Debtor,
    ExitReceipt,
    PlateConflict,
    Session,
    ShiftClosure,
    Tariff,
    TillView,
)


def _money(value: Optional[Decimal]) -> str:
    if value is None:
        return "-"
    return f"{value:,.2f}"


def _when(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _console(console: Optional[Console]) -> Console:
    return console or Console()


def print_sessions(sessions: Iterable[Session], title: str = "Sessions", console: Optional[Console] = None) -> None:
    """Render sessions as a table, in the order given."""
    console = _console(console)
    rows = list(sessions)
    if not rows:
        console.print("[yellow]No sessions to display.[/yellow]")
        return

    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Ticket", style="cyan", no_wrap=True)
    table.add_column("Plate", style="bold")
    table.add_column("Class")
    table.add_column("Entry", style="green")
    table.add_column("Exit", style="green")
    table.add_column("Status")
    table.add_column("Paid", justify="right", style="magenta")
    table.add_column("Debt", justify="right", style="red")
    table.add_column("Id", style="dim")

    for s in rows:
        table.add_row(
            s.ticket_code,
            s.plate or "-",
            s.vehicle_class.value,
            _when(s.entry_time),
            _when(s.exit_time),
            s.status.value,
            _money(s.total_amount),
            _money(s.debt),
            s.id,
        )
    console.print(table)


def print_receipt(receipt: ExitReceipt, console: Optional[Console] = None) -> None:
    console = _console(console)
    s = receipt.session
    table = Table(title=f"Receipt {s.ticket_code}", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Plate", s.plate or "-")
    table.add_row("Class", s.vehicle_class.value)
    table.add_row("Entry", _when(s.entry_time))
    table.add_row("Exit", _when(s.exit_time))
    table.add_row("Minutes", str(receipt.elapsed_minutes))
    table.add_row("Parking", _money(receipt.parking_cost))
    table.add_row("Owed", _money(receipt.owed))
    table.add_row("Paid", f"[bold green]{_money(receipt.paid)}[/bold green] ({receipt.method.value})")
    if s.debt:
        table.add_row("Remaining debt", f"[bold red]{_money(s.debt)}[/bold red]")
    console.print(table)


def print_till(view: TillView, console: Optional[Console] = None) -> None:
    console = _console(console)
    table = Table(title=f"Till since {_when(view.since)}", box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_row("Cash", _money(view.payment_breakdown.cash))
    table.add_row("Card", _money(view.payment_breakdown.card))
    table.add_row("Transfer", _money(view.payment_breakdown.transfer))
    table.add_row("Transactions", str(view.total_transactions))
    table.add_row("Expected cash", _money(view.expected_cash))
    table.add_row("Counted cash", _money(view.actual_cash))
    style = "green" if view.discrepancy == 0 else "red"
    table.add_row("Discrepancy", f"[{style}]{_money(view.discrepancy)}[/{style}]")
    console.print(table)


def print_closures(closures: Sequence[ShiftClosure], console: Optional[Console] = None) -> None:
    console = _console(console)
    if not closures:
        console.print("[yellow]No shift closures yet.[/yellow]")
        return
    table = Table(title="Shift closures", box=box.ROUNDED, caption="Newest first")
    table.add_column("Closed at", style="green")
    table.add_column("Total", justify="right", style="bold")
    table.add_column("Cash", justify="right")
    table.add_column("Card", justify="right")
    table.add_column("Transfer", justify="right")
    table.add_column("Counted", justify="right")
    table.add_column("Discrepancy", justify="right", style="red")
    table.add_column("Tx", justify="right")
    table.add_column("Notes", style="dim")
    for c in closures:
        table.add_row(
            _when(c.closed_at),
            _money(c.expected_total),
            _money(c.cash_total),
            _money(c.card_total),
            _money(c.transfer_total),
            _money(c.arqueo_cash),
            _money(c.discrepancy),
            str(c.total_transactions),
            c.notes or "",
        )
    console.print(table)


def print_tariffs(tariffs: Sequence[Tariff], console: Optional[Console] = None) -> None:
    console = _console(console)
    if not tariffs:
        console.print("[yellow]No custom tariffs.[/yellow]")
        return
    table = Table(title="Tariffs", box=box.ROUNDED)
    table.add_column("Id", style="dim")
    table.add_column("Class", style="cyan")
    table.add_column("Plate / ref")
    table.add_column("Name")
    table.add_column("Amount", justify="right", style="magenta")
    table.add_column("Block", justify="right")
    for t in tariffs:
        table.add_row(
            t.id,
            t.vehicle_class.value,
            t.scope_key or "(class default)",
            t.name or "",
            _money(t.amount),
            f"{t.block_hours}h {t.block_minutes:02d}m",
        )
    console.print(table)


def print_debtors(debtors: Sequence[Debtor], total: Decimal, console: Optional[Console] = None) -> None:
    console = _console(console)
    if not debtors:
        console.print("[green]No outstanding debt.[/green]")
        return
    table = Table(title="Debtors", box=box.ROUNDED, caption=f"Total outstanding: {_money(total)}")
    table.add_column("Plate", style="bold")
    table.add_column("Debt", justify="right", style="red")
    table.add_column("Sessions", justify="right")
    table.add_column("Last exit", style="green")
    for d in debtors:
        table.add_row(d.plate, _money(d.debt), str(d.sessions), _when(d.last_exit))
    console.print(table)


def print_conflicts(conflicts: Sequence[PlateConflict], console: Optional[Console] = None) -> None:
    console = _console(console)
    if not conflicts:
        console.print("[green]No plate conflicts.[/green]")
        return
    for conflict in conflicts:
        print_sessions(conflict.sessions, title=f"Conflict: {conflict.plate}", console=console)


__all__ = [
    "print_closures",
    "print_conflicts",
    "print_debtors",
    "print_receipt",
    "print_sessions",
    "print_tariffs",
    "print_till",
]
