"""
Infrastructure layer: database connections, the PostgreSQL command backend and
the retry middleware.
"""

from parkbill.infrastructure.commands import CommandBackend
from parkbill.infrastructure.retrying import RetryingBackend, is_transient

__all__ = [
    "CommandBackend",
    "RetryingBackend",
    "is_transient",
]
