"""
Session store implementations.

- local: in-memory, authoritative when no backend is reachable
- backed: cached view over a durable command backend
"""

from parkbill.stores.abstract import AbstractSessionStore, SessionStore
from parkbill.stores.backed import BackedSessionStore
from parkbill.stores.local import LocalSessionStore
from parkbill.stores.search import PrefixSearch

__all__ = [
    "AbstractSessionStore",
    "SessionStore",
    "BackedSessionStore",
    "LocalSessionStore",
    "PrefixSearch",
]
