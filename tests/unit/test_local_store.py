from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from parkbill.domain.errors import (
    DuplicateTariff,
    InvalidPayment,
    InvalidTariff,
    PlateAlreadyActive,
    PlateRequired,
    SessionNotFound,
    TariffNotFound,
    TicketAlreadyInUse,
    TicketCodeEmpty,
    UnknownTicket,
)
from parkbill.domain.ids import ID_LENGTH, PREFIX_SESSION
from parkbill.domain.models import PaymentMethod, SessionStatus, VehicleClass
from parkbill.stores.abstract import SessionStore
from parkbill.stores.local import LocalSessionStore

PAGE_SIZE = 2


def test_local_store_satisfies_protocol(local_store: LocalSessionStore) -> None:
    assert isinstance(local_store, SessionStore)
    assert local_store.name == "local"


def test_register_entry_creates_active_session(local_store: LocalSessionStore, clock) -> None:
    session = local_store.register_entry(" abc-123 ", VehicleClass.CAR, "blue", "TK1")

    assert session.id.startswith(PREFIX_SESSION)
    assert len(session.id) == ID_LENGTH
    assert session.plate == "ABC-123"
    assert session.ticket_code == "TK1"
    assert session.status is SessionStatus.ACTIVE
    assert session.entry_time == clock.now
    assert session.exit_time is None
    assert session.total_amount is None
    assert session.debt == Decimal("0")
    assert local_store.find_by_ticket("TK1") == session
    assert local_store.find_by_plate("abc-123") == session


def test_register_entry_validation_errors(local_store: LocalSessionStore) -> None:
    with pytest.raises(TicketCodeEmpty):
        local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="  ")
    with pytest.raises(PlateRequired):
        local_store.register_entry("", VehicleClass.CAR, ticket_code="TK1")
    assert local_store.list_active().total == 0


def test_bicycles_register_without_plate(local_store: LocalSessionStore) -> None:
    first = local_store.register_entry("", VehicleClass.BICYCLE)
    second = local_store.register_entry(None, VehicleClass.BICYCLE)
    assert first.plate == second.plate == ""
    assert first.ticket_code != second.ticket_code
    assert local_store.list_active().total == 2


def test_ticket_code_unique_among_active(local_store: LocalSessionStore) -> None:
    local_store.register_entry("AAA", VehicleClass.CAR, ticket_code="TK1")
    with pytest.raises(TicketAlreadyInUse):
        local_store.register_entry("BBB", VehicleClass.CAR, ticket_code="TK1")

    local_store.process_exit("TK1")
    reused = local_store.register_entry("BBB", VehicleClass.CAR, ticket_code="TK1")
    assert reused.plate == "BBB"


def test_plate_already_active(local_store: LocalSessionStore) -> None:
    first = local_store.register_entry("DUP-1", VehicleClass.CAR, ticket_code="TKA")
    with pytest.raises(PlateAlreadyActive) as excinfo:
        local_store.register_entry("dup-1", VehicleClass.MOTORCYCLE, ticket_code="TKB")
    assert excinfo.value.plate == "DUP-1"
    assert excinfo.value.session_ids == (first.id,)
    assert local_store.find_by_ticket("TKB") is None


def test_process_exit_full_payment(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("ABC-123", VehicleClass.CAR, ticket_code="TK1")
    clock.advance(minutes=30)

    receipt = local_store.process_exit("TK1")

    assert receipt.elapsed_minutes == 30
    assert receipt.parking_cost == Decimal("50")
    assert receipt.paid == Decimal("50")
    assert receipt.method is PaymentMethod.CASH
    assert receipt.session.status is SessionStatus.COMPLETED
    assert receipt.session.exit_time == clock.now
    assert receipt.session.total_amount == Decimal("50")
    assert receipt.session.debt == Decimal("0")
    assert local_store.find_by_ticket("TK1") is None


def test_process_exit_unknown_ticket(local_store: LocalSessionStore) -> None:
    with pytest.raises(UnknownTicket):
        local_store.process_exit("NOPE")
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    local_store.process_exit("TK1")
    with pytest.raises(UnknownTicket):
        local_store.process_exit("TK1")


def test_partial_payment_debt_carries_to_next_visit(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("XYZ-1", VehicleClass.TRUCK, ticket_code="TK2")
    clock.advance(minutes=20)
    receipt = local_store.process_exit("TK2", partial_payment=Decimal("10"))

    assert receipt.session.total_amount == Decimal("10")
    assert receipt.session.debt == Decimal("70")
    assert local_store.get_plate_debt("XYZ-1") == Decimal("70")

    clock.advance(hours=1)
    again = local_store.register_entry("XYZ-1", VehicleClass.TRUCK, ticket_code="TK3")
    assert again.debt == Decimal("70")
    assert local_store.get_plate_debt("XYZ-1") == Decimal("70")
    assert local_store.get_total_debt() == Decimal("70")

    clock.advance(minutes=10)
    settled = local_store.process_exit("TK3")
    assert settled.owed == Decimal("150")
    assert settled.paid == Decimal("150")
    assert local_store.get_plate_debt("XYZ-1") == Decimal("0")


def test_overpayment_is_discarded(local_store: LocalSessionStore, caplog) -> None:
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    with caplog.at_level(logging.WARNING):
        receipt = local_store.process_exit("TK1", partial_payment=Decimal("60"))
    assert receipt.paid == Decimal("50")
    assert receipt.session.debt == Decimal("0")
    assert "Overpayment discarded" in caplog.text


def test_unknown_payment_method_recorded_as_cash(local_store: LocalSessionStore, clock, caplog) -> None:
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    with caplog.at_level(logging.WARNING):
        receipt = local_store.process_exit("TK1", payment_method="voucher")
    assert receipt.method is PaymentMethod.CASH
    assert "Unknown payment method" in caplog.text
    [tx] = local_store.transactions_between(clock.now, clock.now + timedelta(seconds=1))
    assert tx.method is PaymentMethod.CASH


def test_custom_amount_replaces_computed_fee(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    clock.advance(hours=5)
    receipt = local_store.process_exit("TK1", custom_amount=Decimal("12"), payment_method="card")
    assert receipt.parking_cost == Decimal("12")
    assert receipt.paid == Decimal("12")
    assert receipt.method is PaymentMethod.CARD


def test_negative_custom_amount_rejected(local_store: LocalSessionStore) -> None:
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    with pytest.raises(InvalidTariff):
        local_store.process_exit("TK1", custom_amount=Decimal("-1"))
    assert local_store.find_by_ticket("TK1") is not None


def test_process_exit_immediately_bills_one_hour(local_store: LocalSessionStore) -> None:
    local_store.register_entry("ABC-123", VehicleClass.CAR, ticket_code="TK1")

    receipt = local_store.process_exit("TK1")

    assert receipt.elapsed_minutes == 0
    assert receipt.session.total_amount == Decimal("50")
    assert receipt.session.debt == Decimal("0")
    assert local_store.get_plate_debt("ABC-123") == Decimal("0")


def test_negative_partial_payment_rejected(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    with pytest.raises(InvalidPayment):
        local_store.process_exit("TK1", partial_payment=Decimal("-5"))
    assert local_store.find_by_ticket("TK1") is not None
    assert local_store.transactions_between(clock.now, clock.now + timedelta(days=1)) == []


def test_float_partial_payment_is_coerced(local_store: LocalSessionStore) -> None:
    local_store.register_entry("XYZ-1", VehicleClass.TRUCK, ticket_code="TK2")
    receipt = local_store.process_exit("TK2", partial_payment=10.5)
    assert receipt.paid == Decimal("10.5")
    assert receipt.session.debt == Decimal("69.5")


def test_delete_active_session_returns_debt(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("XYZ-1", VehicleClass.TRUCK, ticket_code="TK2")
    clock.advance(minutes=5)
    local_store.process_exit("TK2", partial_payment=Decimal("10"))
    clock.advance(minutes=5)
    again = local_store.register_entry("XYZ-1", VehicleClass.TRUCK, ticket_code="TK3")

    local_store.delete_session(again.id)

    history = local_store.list_by_plate("XYZ-1")
    assert len(history) == 1
    assert history[0].debt == Decimal("70")
    assert local_store.get_plate_debt("XYZ-1") == Decimal("70")


def test_delete_session_drops_transactions(local_store: LocalSessionStore, clock) -> None:
    session = local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    local_store.process_exit("TK1")
    local_store.delete_session(session.id)
    assert local_store.transactions_between(clock.now, clock.now + timedelta(seconds=1)) == []
    with pytest.raises(SessionNotFound):
        local_store.delete_session(session.id)


def test_listings_newest_first_and_paged(local_store: LocalSessionStore, clock) -> None:
    plates = ["AAA", "BBB", "CCC"]
    for plate in plates:
        local_store.register_entry(plate, VehicleClass.CAR)
        clock.advance(minutes=1)

    page = local_store.list_active(limit=PAGE_SIZE)
    assert page.total == 3
    assert [s.plate for s in page.items] == ["CCC", "BBB"]

    rest = local_store.list_active(limit=PAGE_SIZE, offset=PAGE_SIZE)
    assert [s.plate for s in rest.items] == ["AAA"]

    today = local_store.list_by_date(clock.now.date())
    assert [s.plate for s in today.items] == ["CCC", "BBB", "AAA"]
    assert local_store.list_by_date(clock.now.date() - timedelta(days=1)).total == 0


def test_list_by_plate_history(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("ABC", VehicleClass.CAR, ticket_code="TK1")
    clock.advance(minutes=10)
    local_store.process_exit("TK1")
    clock.advance(minutes=10)
    latest = local_store.register_entry("abc", VehicleClass.CAR, ticket_code="TK2")

    history = local_store.list_by_plate("ABC")
    assert [s.ticket_code for s in history] == ["TK2", "TK1"]
    assert local_store.find_by_plate("ABC") == latest
    assert local_store.list_by_plate("  ") == []


def test_search_by_plate_prefix_latest_per_plate(local_store: LocalSessionStore, clock) -> None:
    local_store.register_entry("ABC-1", VehicleClass.CAR, ticket_code="TK1")
    clock.advance(minutes=1)
    local_store.process_exit("TK1")
    clock.advance(minutes=1)
    local_store.register_entry("ABC-1", VehicleClass.CAR, ticket_code="TK2")
    clock.advance(minutes=1)
    local_store.register_entry("ABD-9", VehicleClass.CAR, ticket_code="TK3")
    local_store.register_entry("XYZ", VehicleClass.CAR, ticket_code="TK4")

    found = local_store.search_by_plate_prefix("ab")
    assert [s.ticket_code for s in found] == ["TK3", "TK2"]
    assert local_store.search_by_plate_prefix("ab", limit=1)[0].ticket_code == "TK3"
    assert local_store.search_by_plate_prefix("") == []


def test_debtors_and_total_debt(local_store: LocalSessionStore) -> None:
    local_store.register_entry("AAA", VehicleClass.CAR, ticket_code="TK1")
    local_store.register_entry("BBB", VehicleClass.TRUCK, ticket_code="TK2")
    local_store.process_exit("TK1", partial_payment=Decimal("40"))
    local_store.process_exit("TK2", partial_payment=Decimal("0"))

    page = local_store.list_debtors()
    assert [(d.plate, d.debt) for d in page.items] == [("BBB", Decimal("80")), ("AAA", Decimal("10"))]
    assert local_store.get_total_debt() == Decimal("90")


def test_tariff_crud(local_store: LocalSessionStore) -> None:
    default = local_store.create_tariff(VehicleClass.CAR, Decimal("40"), name="Standard")
    scoped = local_store.create_tariff(
        VehicleClass.CAR, Decimal("25"), scope_key=" abc-123 ", name="Monthly", block_hours=0, block_minutes=30
    )
    assert scoped.scope_key == "ABC-123"
    assert scoped.block_length_minutes == 30

    with pytest.raises(DuplicateTariff):
        local_store.create_tariff(VehicleClass.CAR, Decimal("45"))
    with pytest.raises(DuplicateTariff):
        local_store.create_tariff(VehicleClass.CAR, Decimal("45"), scope_key="ABC-123")

    assert [t.id for t in local_store.list_tariffs()] == [default.id, scoped.id]
    assert [t.id for t in local_store.list_tariffs(search="month")] == [scoped.id]

    updated = local_store.update_tariff(default.id, amount=Decimal("42"), name="Std")
    assert updated.amount == Decimal("42")
    assert updated.created_at == default.created_at

    with pytest.raises(DuplicateTariff):
        local_store.update_tariff(default.id, scope_key="abc-123")
    with pytest.raises(InvalidTariff):
        local_store.update_tariff(default.id, colour="red")

    local_store.delete_tariff(scoped.id)
    with pytest.raises(TariffNotFound):
        local_store.delete_tariff(scoped.id)
    with pytest.raises(TariffNotFound):
        local_store.update_tariff(scoped.id, amount=Decimal("1"))


def test_tariff_terms_validated(local_store: LocalSessionStore) -> None:
    with pytest.raises(InvalidTariff):
        local_store.create_tariff(VehicleClass.CAR, Decimal("-1"))
    with pytest.raises(InvalidTariff):
        local_store.create_tariff(VehicleClass.CAR, Decimal("10"), block_hours=0, block_minutes=0)
    assert local_store.list_tariffs() == []


def test_plate_conflicts_listed(local_store: LocalSessionStore) -> None:
    local_store.register_entry("MIX", VehicleClass.CAR, ticket_code="TK1")
    local_store.process_exit("TK1")
    local_store.register_entry("MIX", VehicleClass.MOTORCYCLE, ticket_code="TK2")

    [conflict] = local_store.list_plate_conflicts()
    assert conflict.plate == "MIX"
    assert len(conflict.sessions) == 2
