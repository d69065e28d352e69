from __future__ import annotations

from parkbill.domain.models import VehicleClass
from parkbill.stores.local import LocalSessionStore
from parkbill.stores.search import PrefixSearch


def _seed(store: LocalSessionStore, clock) -> None:
    for plate in ("AB-1", "ABC-2", "XY-3"):
        store.register_entry(plate, VehicleClass.CAR)
        clock.advance(minutes=1)


def test_search_applies_latest_results(local_store: LocalSessionStore, clock) -> None:
    _seed(local_store, clock)
    search = PrefixSearch(local_store)

    found = search.search("ab")

    assert [s.plate for s in found] == ["ABC-2", "AB-1"]
    assert search.prefix == "ab"
    assert [s.plate for s in search.results] == ["ABC-2", "AB-1"]


def test_blank_prefix_clears_results(local_store: LocalSessionStore, clock) -> None:
    _seed(local_store, clock)
    search = PrefixSearch(local_store)
    search.search("AB")

    assert search.search("  ") == []
    assert search.results == []


def test_stale_response_is_discarded(local_store: LocalSessionStore, clock) -> None:
    _seed(local_store, clock)
    search = PrefixSearch(local_store)

    slow = search.issue()
    fast = search.issue()
    assert search.apply(fast, "ABC", local_store.search_by_plate_prefix("ABC"))
    assert not search.apply(slow, "AB", local_store.search_by_plate_prefix("AB"))

    assert search.prefix == "ABC"
    assert [s.plate for s in search.results] == ["ABC-2"]


def test_search_superseded_while_running_returns_none(local_store: LocalSessionStore, clock) -> None:
    _seed(local_store, clock)

    class _RacingStore:
        """Issues a newer search while the first one is being served."""

        def __init__(self) -> None:
            self.search = None

        def search_by_plate_prefix(self, prefix, limit=None):
            if prefix == "A":
                self.search.issue()
            return local_store.search_by_plate_prefix(prefix, limit)

    racing = _RacingStore()
    search = PrefixSearch(racing, limit=5)
    racing.search = search

    assert search.search("A") is None
    assert search.results == []


def test_limit_is_forwarded(local_store: LocalSessionStore, clock) -> None:
    _seed(local_store, clock)
    search = PrefixSearch(local_store, limit=1)
    assert [s.plate for s in search.search("AB")] == ["ABC-2"]
