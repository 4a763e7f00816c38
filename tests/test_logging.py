"""Structured logging (caisse_kernel/logging_config.py)."""

import json
import logging
from datetime import date, datetime, timezone
from io import StringIO
from uuid import uuid4

import pytest

from caisse_kernel.exceptions import IllegalTransitionError
from caisse_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Start from an unconfigured hierarchy; restore the suite's setup afterwards."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


def _configure() -> StringIO:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    configure_logging(handler=handler)
    return stream


def _records(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestStructuredFormatter:
    def test_json_line(self):
        stream = _configure()
        get_logger("test").info("declaration_created", extra={"ref": "DC-1", "declaration_level": 4})

        (record,) = _records(stream)
        assert record["message"] == "declaration_created"
        assert record["level"] == "INFO"
        assert record["logger"] == "caisse_kernel.test"
        assert record["ref"] == "DC-1"
        assert "ts" in record

    def test_non_json_values(self):
        stream = _configure()
        declaration_id = uuid4()
        get_logger("test").info(
            "values",
            extra={
                "declaration_uuid": declaration_id,
                "on": date(2023, 12, 31),
                "at": datetime(2024, 1, 1, tzinfo=timezone.utc),
                "allowed": frozenset({"REJETE", "EN_COURS"}),
            },
        )
        (record,) = _records(stream)
        assert record["declaration_uuid"] == str(declaration_id)
        assert record["on"] == "2023-12-31"
        assert record["allowed"] == ["EN_COURS", "REJETE"]

    def test_colliding_extra_is_dropped(self):
        record = logging.LogRecord("caisse_kernel.test", logging.INFO, __file__, 1, "msg", (), None)
        record.level = 4
        record.ref = "DC-1"

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["level"] == "INFO"
        assert payload["ref"] == "DC-1"

    def test_kernel_exception_fields(self):
        stream = _configure()
        try:
            raise IllegalTransitionError("SOUMIS", "VALIDE", frozenset({"EN_COURS"}))
        except IllegalTransitionError:
            get_logger("test").exception("transition_failed")

        (record,) = _records(stream)
        assert record["exc_type"] == "IllegalTransitionError"
        assert record["exc_code"] == "STATUT_INCOMPATIBLE"
        assert record["exc_current_status"] == "SOUMIS"
        assert "Traceback" in record["traceback"]


class TestLogContext:
    def test_fields_added(self):
        stream = _configure()
        LogContext.set(correlation_id="req-1", actor_id="M1001")
        get_logger("test").info("with_context")

        (record,) = _records(stream)
        assert record["correlation_id"] == "req-1"
        assert record["actor_id"] == "M1001"
        assert "declaration_id" not in record

    def test_bind_restores(self):
        LogContext.set(correlation_id="outer")
        with LogContext.bind(correlation_id="inner", declaration_id="d-1"):
            assert LogContext.get_all() == {"correlation_id": "inner", "declaration_id": "d-1"}
        assert LogContext.get_all() == {"correlation_id": "outer"}

    def test_clear(self):
        LogContext.set(actor_role="CP")
        LogContext.clear()
        assert LogContext.get_all() == {}


class TestConfiguration:
    def test_idempotent(self):
        _configure()
        configure_logging(stream=StringIO())
        structured = [
            h for h in logging.getLogger("caisse_kernel").handlers
            if isinstance(h.formatter, StructuredFormatter)
        ]
        assert len(structured) == 1

    def test_level_respected(self):
        stream = StringIO()
        configure_logging(level=logging.WARNING, stream=stream)
        log = get_logger("test")
        log.info("hidden")
        log.warning("shown")
        assert [r["message"] for r in _records(stream)] == ["shown"]

    def test_does_not_propagate(self):
        _configure()
        assert logging.getLogger("caisse_kernel").propagate is False
