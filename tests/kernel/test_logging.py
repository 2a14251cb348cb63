"""
Structured logging tests.

The formatter emits one JSON object per record with the envelope, the
bound LogContext fields and the ``extra`` payload.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from tally_kernel.exceptions import ConcurrentModificationError, StageClosedError
from tally_kernel.logging_config import LogContext, StructuredFormatter, get_logger


def _record(msg="event", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord(
        name="tally.test", level=level, pathname=__file__, lineno=1,
        msg=msg, args=(), exc_info=exc_info,
    )
    for k, v in extra.items():
        setattr(record, k, v)
    return record


class TestStructuredFormatter:

    def test_envelope(self):
        payload = json.loads(StructuredFormatter().format(_record("count_recorded")))
        assert payload["message"] == "count_recorded"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "tally.test"
        assert "ts" in payload

    def test_extra_values_are_serialized(self):
        item_id = uuid4()
        payload = json.loads(StructuredFormatter().format(_record(
            quantity=Decimal("10.5"),
            item_id=item_id,
            at=datetime(2024, 1, 1, tzinfo=UTC),
        )))
        assert payload["quantity"] == "10.5"
        assert payload["item_id"] == str(item_id)
        assert payload["at"].startswith("2024-01-01")

    def test_context_fields_are_included(self):
        with LogContext.bind(inventory_id="inv-1", stage="count2"):
            payload = json.loads(StructuredFormatter().format(_record()))
        assert payload["inventory_id"] == "inv-1"
        assert payload["stage"] == "count2"

    def test_exception_fields(self):
        try:
            raise StageClosedError("inv-1", 3, "count2_open")
        except StageClosedError:
            record = _record(level=logging.ERROR, exc_info=sys.exc_info())
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["exc_type"] == "StageClosedError"
        assert payload["exc_code"] == "STAGE_CLOSED"
        assert payload["exc_stage"] == 3
        assert "traceback" in payload


class TestLogContext:

    def test_bind_restores_previous_values(self):
        LogContext.set(actor_id="outer")
        with LogContext.bind(actor_id="inner", item_id="item-1"):
            assert LogContext.get_all()["actor_id"] == "inner"
        ctx = LogContext.get_all()
        assert ctx["actor_id"] == "outer"
        assert "item_id" not in ctx

    def test_clear(self):
        LogContext.set(inventory_id="inv-1")
        LogContext.clear()
        assert LogContext.get_all() == {}


class TestLoggerNamespace:

    def test_get_logger_prefix(self):
        assert get_logger("engines.resolver").name == "tally.engines.resolver"

    def test_captured_logs_fixture(self, captured_logs):
        get_logger("kernel.test").info("sample_event", extra={"n": 1})
        records = captured_logs()
        assert any(r["message"] == "sample_event" and r["n"] == 1 for r in records)


class TestOperationScope:

    def test_generates_correlation_id(self):
        with LogContext.operation("record_count", item_id="item-1"):
            ctx = LogContext.get_all()
        assert ctx["operation"] == "record_count"
        assert ctx["item_id"] == "item-1"
        assert len(ctx["correlation_id"]) == 32
        assert LogContext.get_all() == {}

    def test_keeps_caller_correlation_id(self):
        with LogContext.bind(correlation_id="req-7"):
            with LogContext.operation("close_count"):
                assert LogContext.get("correlation_id") == "req-7"

    def test_nested_operation_shares_outer_id(self):
        with LogContext.operation("close_count"):
            outer = LogContext.get("correlation_id")
            with LogContext.operation("validate_integrity"):
                assert LogContext.get("correlation_id") == outer
                assert LogContext.get("operation") == "validate_integrity"
            assert LogContext.get("operation") == "close_count"

    def test_separate_operations_get_separate_ids(self):
        with LogContext.operation("record_count"):
            first = LogContext.get("correlation_id")
        with LogContext.operation("record_count"):
            second = LogContext.get("correlation_id")
        assert first != second

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="producer"):
            with LogContext.bind(producer="x"):
                pass
        with pytest.raises(ValueError):
            LogContext.set(entry_id="x")

    def test_uuid_values_bound_as_strings(self):
        inventory_id = uuid4()
        with LogContext.bind(inventory_id=inventory_id, stage=None):
            assert LogContext.get_all() == {"inventory_id": str(inventory_id)}


class TestExceptionPayload:

    def test_retryable_flag_for_concurrency_errors(self):
        try:
            raise ConcurrentModificationError("inventory", "inv-1")
        except ConcurrentModificationError:
            record = _record(level=logging.WARNING, exc_info=sys.exc_info())
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["exc_code"] == "CONCURRENT_MODIFICATION"
        assert payload["exc_retryable"] is True
        assert payload["exc_entity_type"] == "inventory"

    def test_foreign_exception_has_no_code(self):
        try:
            raise KeyError("missing")
        except KeyError:
            record = _record(level=logging.ERROR, exc_info=sys.exc_info())
        payload = json.loads(StructuredFormatter().format(record))
        assert payload["exc_type"] == "KeyError"
        assert "exc_code" not in payload

    def test_extra_cannot_override_context(self):
        with LogContext.bind(inventory_id="inv-1"):
            payload = json.loads(StructuredFormatter().format(_record(inventory_id="other")))
        assert payload["inventory_id"] == "inv-1"

    def test_sets_serialize_sorted(self):
        payload = json.loads(StructuredFormatter().format(_record(roles=frozenset({"b", "a"}))))
        assert payload["roles"] == ["a", "b"]
