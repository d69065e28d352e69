from __future__ import annotations

import json
import logging
import sys

from parkbill.utils.logging import ConsoleFormatter, JsonFormatter, _json_formatter, configure_logging, get_logger

EXPECTED_DEBT = "70"
EXPECTED_ATTEMPTS = 3


def _record(msg: str = "Entry registered") -> logging.LogRecord:
    return logging.LogRecord(
        name="parkbill.stores.local",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


def test_json_formatter_promotes_standard_extra_fields() -> None:
    record = _record()
    record.ticket = "TK1"
    record.debt = EXPECTED_DEBT

    payload = json.loads(_json_formatter(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "parkbill.stores.local"
    assert payload["message"] == "Entry registered"
    assert payload["ticket"] == "TK1"
    assert payload["debt"] == EXPECTED_DEBT
    assert "pathname" not in payload


def test_json_formatter_supports_legacy_nested_extra_field() -> None:
    record = _record("Backend command failed after retries")
    record.extra = {"attempts": EXPECTED_ATTEMPTS}

    payload = json.loads(_json_formatter(record))

    assert payload["attempts"] == EXPECTED_ATTEMPTS


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("connection lost")
    except RuntimeError:
        record = logging.LogRecord("parkbill", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: connection lost" in payload["exc_info"]


def test_configure_logging_json_handler() -> None:
    configure_logging(level="DEBUG", json_logs=True)
    root = logging.getLogger()
    try:
        assert root.level == logging.DEBUG
        assert any(isinstance(h.formatter, JsonFormatter) for h in root.handlers)
        assert get_logger("parkbill.engine").getEffectiveLevel() == logging.DEBUG
    finally:
        configure_logging(level="WARNING", json_logs=False)


def test_console_formatter_appends_context() -> None:
    record = _record()
    record.ticket = "TK1"
    record.plate = "ABC-123"

    line = ConsoleFormatter().format(record)

    assert "| INFO | parkbill.stores.local | Entry registered | ticket=TK1 plate=ABC-123" in line


def test_console_formatter_without_context() -> None:
    assert ConsoleFormatter().format(_record()).endswith("| Entry registered")


def test_configure_logging_quiets_driver_loggers() -> None:
    configure_logging(level="INFO")
    try:
        assert logging.getLogger("psycopg.pool").level == logging.WARNING
        configure_logging(level="DEBUG")
        assert logging.getLogger("psycopg.pool").level == logging.DEBUG
    finally:
        configure_logging(level="WARNING", json_logs=False)
