from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from parkbill.domain.errors import InvariantViolation
from parkbill.domain.models import Session, Tariff, VehicleClass
from parkbill.tariffs import DEFAULT_RATES, TariffResolver, elapsed_minutes

T0 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _session(vehicle_class: VehicleClass = VehicleClass.CAR, rate_override=None) -> Session:
    return Session(
        id="VH" + "x" * 23,
        ticket_code="TK1",
        plate="ABC-123",
        vehicle_class=vehicle_class,
        entry_time=T0,
        rate_override=rate_override,
    )


def _tariff(amount: str, hours: int = 1, minutes: int = 0, scope_key=None, vehicle_class=VehicleClass.CAR) -> Tariff:
    return Tariff(
        id="CT" + "y" * 23,
        vehicle_class=vehicle_class,
        scope_key=scope_key,
        amount=Decimal(amount),
        block_hours=hours,
        block_minutes=minutes,
        created_at=T0,
    )


@pytest.mark.parametrize(
    "delta, expected",
    [
        (timedelta(0), 0),
        (timedelta(seconds=-5), 0),
        (timedelta(seconds=1), 1),
        (timedelta(seconds=60), 1),
        (timedelta(seconds=61), 2),
        (timedelta(hours=2), 120),
    ],
)
def test_elapsed_minutes_rounds_up(delta: timedelta, expected: int) -> None:
    assert elapsed_minutes(T0, T0 + delta) == expected


def test_default_rates_per_class() -> None:
    resolver = TariffResolver()
    assert resolver.rate_for(VehicleClass.CAR) == Decimal("50")
    assert resolver.rate_for(VehicleClass.MOTORCYCLE) == Decimal("30")
    assert resolver.rate_for(VehicleClass.TRUCK) == Decimal("80")
    assert resolver.rate_for(VehicleClass.BICYCLE) == Decimal("15")
    assert set(DEFAULT_RATES) == set(VehicleClass)


def test_rates_accept_string_keys_and_keep_missing_defaults() -> None:
    resolver = TariffResolver({"car": "60"})
    assert resolver.rate_for(VehicleClass.CAR) == Decimal("60")
    assert resolver.rate_for(VehicleClass.TRUCK) == Decimal("80")


def test_default_amount_bills_at_least_one_hour() -> None:
    resolver = TariffResolver()
    assert resolver.default_amount(VehicleClass.CAR, 0) == Decimal("50")
    assert resolver.default_amount(VehicleClass.CAR, 60) == Decimal("50")
    assert resolver.default_amount(VehicleClass.CAR, 61) == Decimal("100")
    assert resolver.default_amount(VehicleClass.MOTORCYCLE, 125) == Decimal("90")


def test_rate_override_replaces_class_rate() -> None:
    resolver = TariffResolver()
    assert resolver.default_amount(VehicleClass.CAR, 90, Decimal("20")) == Decimal("40")


def test_custom_amount_uses_block_length() -> None:
    resolver = TariffResolver()
    half_hour = _tariff("10", hours=0, minutes=30)
    assert resolver.custom_amount(half_hour, 0) == Decimal("10")
    assert resolver.custom_amount(half_hour, 30) == Decimal("10")
    assert resolver.custom_amount(half_hour, 31) == Decimal("20")
    assert resolver.custom_amount(_tariff("100", hours=24), 60 * 30) == Decimal("200")


@pytest.mark.parametrize(
    "amount, hours, minutes",
    [("10", 0, 30), ("5", 0, 15), ("50", 1, 0), ("100", 24, 0), ("0", 0, 1)],
)
def test_custom_amount_never_decreases_with_time(amount: str, hours: int, minutes: int) -> None:
    resolver = TariffResolver()
    tariff = _tariff(amount, hours=hours, minutes=minutes)
    billed = [resolver.custom_amount(tariff, m) for m in range(0, 3 * 24 * 60, 7)]
    assert billed == sorted(billed)
    assert billed[0] == Decimal(amount)


def test_quote_uses_tariff_when_given() -> None:
    resolver = TariffResolver()
    session = _session()
    at = T0 + timedelta(minutes=45)
    assert resolver.quote(session, at) == Decimal("50")
    assert resolver.quote(session, at, _tariff("5", hours=0, minutes=15)) == Decimal("15")


def test_exit_cost_bills_custom_amount_verbatim() -> None:
    resolver = TariffResolver()
    minutes, cost = resolver.exit_cost(_session(), T0 + timedelta(minutes=200), Decimal("7.50"))
    assert minutes == 200
    assert cost == Decimal("7.50")


def test_exit_cost_rejects_negative_amounts() -> None:
    resolver = TariffResolver()
    with pytest.raises(InvariantViolation):
        resolver.exit_cost(_session(), T0, Decimal("-1"))
    with pytest.raises(InvariantViolation):
        resolver.default_amount(VehicleClass.CAR, 10, Decimal("-5"))


def test_select_tariff_prefers_plate_scope() -> None:
    default = _tariff("40")
    scoped = _tariff("25", scope_key="ABC-123").model_copy(update={"id": "CT" + "z" * 23})
    truck = _tariff("90", vehicle_class=VehicleClass.TRUCK)

    catalogue = [default, scoped, truck]
    assert TariffResolver.select_tariff(catalogue, VehicleClass.CAR, "abc-123") is scoped
    assert TariffResolver.select_tariff(catalogue, VehicleClass.CAR, "OTHER") is default
    assert TariffResolver.select_tariff(catalogue, VehicleClass.CAR, None) is default
    assert TariffResolver.select_tariff(catalogue, VehicleClass.MOTORCYCLE, "ABC-123") is None
