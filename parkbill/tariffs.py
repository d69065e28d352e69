"""
Tariff computation: how much a session costs for a given duration.

Two paths:

- default: ``max(1, ceil(minutes / 60)) * rate`` where ``rate`` is the session's
  ``rate_override`` or the hourly default for its vehicle class;
- custom: ``max(1, ceil(minutes / block)) * tariff.amount`` for a Tariff whose
  block is ``block_hours`` hours plus ``block_minutes`` minutes.

Everything here is pure; the resolver holds only the default rate table.
"""
from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Tuple

from parkbill.domain.errors import InvariantViolation
from parkbill.domain.models import Session, Tariff, VehicleClass

DEFAULT_RATES: Dict[VehicleClass, Decimal] = {
    VehicleClass.CAR: Decimal("50"),
    VehicleClass.MOTORCYCLE: Decimal("30"),
    VehicleClass.TRUCK: Decimal("80"),
    VehicleClass.BICYCLE: Decimal("15"),
}


def elapsed_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, rounded up (61 s -> 2 min, 0 s -> 0 min)."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 60)


def _checked(amount: Decimal) -> Decimal:
    if amount < 0:
        raise InvariantViolation(f"negative billed amount: {amount}")
    return amount


class TariffResolver:
    """
    Computes billed amounts.

    Parameters
    ----------
    rates : mapping | None
        Hourly rate per vehicle class. Keys may be ``VehicleClass`` members or
        their string values. Missing classes fall back to ``DEFAULT_RATES``.
    """

    def __init__(self, rates: Optional[Mapping] = None) -> None:
        self._rates: Dict[VehicleClass, Decimal] = dict(DEFAULT_RATES)
        for key, value in (rates or {}).items():
            self._rates[VehicleClass(key)] = Decimal(value)

    def rate_for(self, vehicle_class: VehicleClass) -> Decimal:
        return self._rates[vehicle_class]

    def default_amount(
        self,
        vehicle_class: VehicleClass,
        minutes: int,
        rate_override: Optional[Decimal] = None,
    ) -> Decimal:
        hours = max(1, math.ceil(minutes / 60))
        rate = rate_override if rate_override is not None else self.rate_for(vehicle_class)
        return _checked(hours * rate)

    def custom_amount(self, tariff: Tariff, minutes: int) -> Decimal:
        blocks = max(1, math.ceil(minutes / tariff.block_length_minutes))
        return _checked(blocks * tariff.amount)

    def quote(self, session: Session, at: datetime, tariff: Optional[Tariff] = None) -> Decimal:
        """Parking cost of ``session`` if it were checked out at ``at`` (debt excluded)."""
        minutes = elapsed_minutes(session.entry_time, at)
        if tariff is not None:
            return self.custom_amount(tariff, minutes)
        return self.default_amount(session.vehicle_class, minutes, session.rate_override)

    def exit_cost(
        self, session: Session, at: datetime, custom_amount: Optional[Decimal] = None
    ) -> Tuple[int, Decimal]:
        """``(elapsed_minutes, cost)`` at checkout; a custom amount is billed verbatim."""
        minutes = elapsed_minutes(session.entry_time, at)
        if custom_amount is not None:
            return minutes, _checked(Decimal(custom_amount))
        return minutes, self.default_amount(session.vehicle_class, minutes, session.rate_override)

    @staticmethod
    def select_tariff(
        tariffs: Iterable[Tariff], vehicle_class: VehicleClass, plate: Optional[str] = None
    ) -> Optional[Tariff]:
        """Pick the plate-scoped tariff for the class if one exists, else the class default."""
        key = (plate or "").strip().upper()
        class_default: Optional[Tariff] = None
        for tariff in tariffs:
            if tariff.vehicle_class is not vehicle_class:
                continue
            if tariff.scope_key:
                if key and tariff.scope_key.upper() == key:
                    return tariff
            elif class_default is None:
                class_default = tariff
        return class_default


__all__ = [
    "DEFAULT_RATES",
    "TariffResolver",
    "elapsed_minutes",
]
