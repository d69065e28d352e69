"""
Plate conflict handling.

Two kinds of conflict reach the operator:

- registration-time: ``register_entry`` refused a plate that already has an
  active session; the failed call is kept as a ``PendingRegisterConflict``
  holding the exact original arguments;
- background: ``scan()`` finds plates with several active sessions, or with
  sessions of different vehicle classes.

Resolution always goes through ``SessionStore.delete_session`` one id at a
time, so a failure part-way leaves an accurate picture of what remains.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from parkbill.domain.errors import ConflictMismatch, DomainError, SessionNotFound
from parkbill.domain.models import PendingRegisterConflict, PlateConflict, Session
from parkbill.domain.rules import normalize_plate
from parkbill.stores.abstract import SessionStore
from parkbill.utils.logging import get_logger

log = get_logger(__name__)


class ConflictResolver:
    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._open: Dict[str, PlateConflict] = {}

    @property
    def open_conflicts(self) -> List[PlateConflict]:
        with self._lock:
            return list(self._open.values())

    def get(self, plate: str) -> Optional[PlateConflict]:
        with self._lock:
            return self._open.get(normalize_plate(plate))

    def scan(self) -> List[PlateConflict]:
        """
        Re-run detection and replace the open set with the result.

        Idempotent: calling it twice without intervening changes yields the same
        conflicts, so it is safe on any schedule.
        """
        found = self._store.list_plate_conflicts()
        with self._lock:
            self._open = {c.plate: c for c in found}
        if found:
            log.warning("Plate conflicts detected", extra={"plates": [c.plate for c in found]})
        return found

    def resolve(self, plate: str, keep_id: str) -> Session:
        """
        Keep ``keep_id`` and delete every other session of the conflicting plate.

        Returns the kept session. If a deletion fails, the conflict stays open
        listing only the sessions not deleted yet, and the error propagates.

        Raises
        ------
        ConflictMismatch
            ``keep_id`` is not one of the conflict's sessions, or no conflict is
            open for ``plate``.
        """
        key = normalize_plate(plate)
        with self._lock:
            conflict = self._open.get(key)
        if conflict is None or keep_id not in conflict.session_ids:
            raise ConflictMismatch(key, keep_id)

        remaining = list(conflict.sessions)
        kept = next(s for s in remaining if s.id == keep_id)
        for session in conflict.sessions:
            if session.id == keep_id:
                continue
            try:
                self._store.delete_session(session.id)
            except Exception:
                with self._lock:
                    self._open[key] = PlateConflict(plate=key, sessions=tuple(remaining))
                log.error(
                    "Conflict resolution interrupted",
                    extra={"plate": key, "failed_id": session.id, "remaining": [s.id for s in remaining]},
                )
                raise
            remaining.remove(session)

        with self._lock:
            self._open.pop(key, None)
        log.info("Plate conflict resolved", extra={"plate": key, "kept": keep_id})
        return kept

    def sessions_for(self, pending: PendingRegisterConflict) -> List[Session]:
        return self._store.list_by_plate(pending.plate)

    def resolve_pending(self, pending: PendingRegisterConflict, delete_id: str) -> Session:
        """
        Delete ``delete_id`` and retry the original registration verbatim.

        ``delete_id`` must be one of the plate's sessions. On failure the caller
        still holds ``pending`` (it is immutable) and may retry it with the same
        id: a blocking session already deleted by an earlier attempt is skipped.

        Raises
        ------
        ConflictMismatch
            ``delete_id`` belongs to another plate or does not exist. Nothing
            is deleted.
        """
        key = normalize_plate(pending.plate)
        blocking = delete_id in pending.blocking_session_ids
        if not blocking and delete_id not in {s.id for s in self._store.list_by_plate(key)}:
            raise ConflictMismatch(key, delete_id)

        try:
            self._store.delete_session(delete_id)
        except SessionNotFound:
            if not blocking:
                raise
            log.info("Blocking session already deleted", extra={"plate": key, "deleted": delete_id})
        try:
            session = self._store.register_entry(
                pending.plate, pending.vehicle_class, pending.observations, pending.ticket_code
            )
        except DomainError:
            log.warning(
                "Retried registration failed", extra={"plate": pending.plate, "deleted": delete_id}
            )
            raise
        log.info("Pending registration completed", extra={"plate": pending.plate, "deleted": delete_id})
        return session


__all__ = ["ConflictResolver"]
