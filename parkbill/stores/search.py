"""
Plate autocomplete with latest-request-wins semantics.

Every search takes a sequence number when it is issued. When its result comes
back it is applied only if no newer search was issued meanwhile, so a slow
response for ``"AB"`` can never overwrite the results for ``"ABC"``.
"""

from __future__ import annotations

import threading
from typing import List, Optional

from parkbill.domain.models import Session
from parkbill.stores.abstract import SessionStore
from parkbill.utils.logging import get_logger

log = get_logger(__name__)


class PrefixSearch:
    def __init__(self, store: SessionStore, limit: Optional[int] = None) -> None:
        self._store = store
        self._limit = limit
        self._lock = threading.Lock()
        self._issued = 0
        self._applied = 0
        self._prefix = ""
        self._results: List[Session] = []

    @property
    def results(self) -> List[Session]:
        with self._lock:
            return list(self._results)

    @property
    def prefix(self) -> str:
        return self._prefix

    def issue(self) -> int:
        """Reserve the next sequence number."""
        with self._lock:
            self._issued += 1
            return self._issued

    def apply(self, seq: int, prefix: str, results: List[Session]) -> bool:
        """Store ``results`` if ``seq`` is still the latest request. Returns whether they were applied."""
        with self._lock:
            if seq != self._issued:
                log.debug("Superseded search result discarded", extra={"seq": seq, "latest": self._issued})
                return False
            self._applied = seq
            self._prefix = prefix
            self._results = list(results)
            return True

    def search(self, prefix: str) -> Optional[List[Session]]:
        """
        Run a prefix search.

        Returns the results when they were applied, ``None`` when a newer
        search superseded this one while it was running.
        """
        seq = self.issue()
        results = self._store.search_by_plate_prefix(prefix, self._limit) if prefix.strip() else []
        return list(results) if self.apply(seq, prefix, results) else None


__all__ = ["PrefixSearch"]
