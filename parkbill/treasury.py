"""
Till and shift-closure aggregation over the store's payment ledger.

The open shift of a day starts at that day's latest closure, or at UTC
midnight when the day has none yet. Only cash is counted against the till;
card and transfer totals are reported alongside.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from parkbill.domain.ids import PREFIX_SHIFT_CLOSURE, generate_id
from parkbill.domain.models import (
    ZERO,
    PaymentBreakdown,
    PaymentMethod,
    ShiftClosure,
    TillView,
    Transaction,
)
from parkbill.domain.rules import utc_now
from parkbill.stores.abstract import SessionStore
from parkbill.utils.logging import get_logger

log = get_logger(__name__)

CLOSURE_LIST_MAX = 200

_TICK = timedelta(microseconds=1)


def breakdown(transactions: Iterable[Transaction]) -> PaymentBreakdown:
    totals = {method: ZERO for method in PaymentMethod}
    for tx in transactions:
        totals[tx.method] += tx.amount
    return PaymentBreakdown(
        cash=totals[PaymentMethod.CASH],
        card=totals[PaymentMethod.CARD],
        transfer=totals[PaymentMethod.TRANSFER],
    )


class TreasuryAggregator:
    """
    Parameters
    ----------
    store : SessionStore
        Source of transactions and closures.
    clock : callable | None
        Current UTC time; injected by tests.
    """

    def __init__(self, store: SessionStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._store = store
        self._clock = clock or utc_now

    def shift_window(self, day: Optional[date] = None) -> Tuple[datetime, datetime]:
        """``[start, end)`` of the open shift for ``day`` (today by default)."""
        now = self._clock()
        day = day or now.astimezone(timezone.utc).date()
        midnight = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end_of_day = midnight + timedelta(days=1)
        start = midnight
        for closure in self._store.list_shift_closures(CLOSURE_LIST_MAX):
            if midnight <= closure.closed_at < end_of_day:
                # Payments stamped at the closure instant belong to the closed shift.
                start = max(start, closure.closed_at + _TICK)
        end = min(end_of_day, now + _TICK)
        return start, max(start, end)

    def get_treasury(self, day: Optional[date] = None, actual_cash: Optional[Decimal] = None) -> TillView:
        start, end = self.shift_window(day)
        transactions = self._store.transactions_between(start, end)
        totals = breakdown(transactions)
        expected = totals.cash
        actual = expected if actual_cash is None else Decimal(actual_cash)
        return TillView(
            expected_cash=expected,
            actual_cash=actual,
            discrepancy=actual - expected,
            payment_breakdown=totals,
            total_transactions=len(transactions),
            since=start,
        )

    def close_shift(self, arqueo_cash: Optional[Decimal] = None, notes: Optional[str] = None) -> ShiftClosure:
        """Snapshot the open shift and append it to the ledger. Sessions are not touched."""
        start, end = self.shift_window()
        transactions = self._store.transactions_between(start, end)
        totals = breakdown(transactions)
        counted = None if arqueo_cash is None else Decimal(arqueo_cash)
        closure = ShiftClosure(
            id=generate_id(PREFIX_SHIFT_CLOSURE),
            closed_at=self._clock(),
            expected_total=totals.total,
            cash_total=totals.cash,
            card_total=totals.card,
            transfer_total=totals.transfer,
            arqueo_cash=counted,
            discrepancy=ZERO if counted is None else counted - totals.cash,
            total_transactions=len(transactions),
            notes=notes,
        )
        self._store.append_shift_closure(closure)
        log.info(
            "Shift closed",
            extra={
                "closure_id": closure.id,
                "expected_total": str(closure.expected_total),
                "cash_total": str(closure.cash_total),
                "discrepancy": str(closure.discrepancy),
            },
        )
        return closure

    def list_shift_closures(self, limit: int = 50) -> List[ShiftClosure]:
        return self._store.list_shift_closures(max(1, min(limit, CLOSURE_LIST_MAX)))


__all__ = ["TreasuryAggregator", "breakdown", "CLOSURE_LIST_MAX"]
