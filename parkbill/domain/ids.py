"""Prefixed identifiers: 25 characters, a 2-character prefix plus alphanumerics."""

from __future__ import annotations

import secrets
import string
import time

ID_LENGTH = 25

PREFIX_SESSION = "VH"
PREFIX_TRANSACTION = "TX"
PREFIX_SHIFT_CLOSURE = "SC"
PREFIX_TARIFF = "CT"

_CHARSET = string.ascii_letters + string.digits
_BASE36 = string.digits + string.ascii_uppercase


def generate_id(prefix: str) -> str:
    suffix_len = max(ID_LENGTH - len(prefix), 0)
    return prefix + "".join(secrets.choice(_CHARSET) for _ in range(suffix_len))


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_ticket_code() -> str:
    """``TK`` + base-36 epoch milliseconds + 3 random characters, e.g. ``TKM2X9A1B7QF4``."""
    millis = time.time_ns() // 1_000_000
    return f"TK{_to_base36(millis)}" + "".join(secrets.choice(_BASE36) for _ in range(3))


__all__ = [
    "ID_LENGTH",
    "PREFIX_SESSION",
    "PREFIX_TRANSACTION",
    "PREFIX_SHIFT_CLOSURE",
    "PREFIX_TARIFF",
    "generate_id",
    "generate_ticket_code",
]
