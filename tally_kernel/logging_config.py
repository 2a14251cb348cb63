"""
Module: tally_kernel.logging_config
Responsibility: Structured JSON logging for the counting core.  One JSON
    object per record, tagged with the counting context (which inventory,
    stage, item or serial) and the correlation id of the service call that
    produced it.
Architecture position: Kernel.  Imported by every layer; imports only the
    kernel exception types.

Record layout::

    {"ts": ..., "level": ..., "logger": "tally.modules.counting.service",
     "message": "count_recorded",
     "correlation_id": "9f0c...", "operation": "record_count",
     "inventory_id": ..., "item_id": ..., "stage": "count1", "actor_id": ...,
     <extra fields>,
     "exc_type": ..., "exc_code": ..., "exc_retryable": ..., "exc_<field>": ...}

Invariants enforced:
    - Context fields are limited to ``LogContext.FIELDS``; binding any other
      name is a programming error (ValueError).
    - An operation scope reuses a correlation id bound by the caller and
      generates one otherwise, so every record of one service call (engine
      traces included) shares it.
    - Extra fields never overwrite the envelope or context fields.
"""

from __future__ import annotations

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID, uuid4

from tally_kernel.exceptions import TallyError

_EMPTY: Mapping[str, str] = MappingProxyType({})

_fields_var: ContextVar[Mapping[str, str]] = ContextVar("tally_log_context", default=_EMPTY)


class LogContext:
    """Request-scoped log fields, safe across threads and asyncio tasks.

    All fields live in one immutable mapping held by a ContextVar; binding
    replaces the mapping and restores the previous one on exit.
    """

    FIELDS: tuple[str, ...] = (
        "correlation_id",
        "operation",
        "inventory_id",
        "actor_id",
        "stage",
        "item_id",
        "serial_number",
        "trace_id",
    )

    @classmethod
    def _merged(cls, fields: Mapping[str, Any]) -> Mapping[str, str]:
        unknown = set(fields) - set(cls.FIELDS)
        if unknown:
            raise ValueError(f"Unknown log context field(s): {', '.join(sorted(unknown))}")
        merged = dict(_fields_var.get())
        merged.update({k: str(v) for k, v in fields.items() if v is not None})
        return MappingProxyType(merged)

    @classmethod
    def get(cls, name: str) -> str | None:
        return _fields_var.get().get(name)

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Bound fields in ``FIELDS`` order."""
        current = _fields_var.get()
        return {name: current[name] for name in cls.FIELDS if name in current}

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Bind fields for the rest of the current context.  None values are skipped."""
        _fields_var.set(cls._merged(fields))

    @classmethod
    def clear(cls) -> None:
        _fields_var.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type[LogContext]]:
        """Bind fields inside a ``with`` block; the previous fields come back on exit."""
        token = _fields_var.set(cls._merged(fields))
        try:
            yield cls
        finally:
            _fields_var.reset(token)

    @classmethod
    def operation(cls, name: str, **fields: Any):
        """Scope for one service call: binds ``operation`` and a correlation id.

        A ``correlation_id`` passed in, or already bound by the caller (for
        example a request handler), is kept.  Otherwise a new one is made.
        """
        correlation_id = fields.pop("correlation_id", None) or cls.get("correlation_id")
        return cls.bind(
            correlation_id=correlation_id or uuid4().hex,
            operation=name,
            **fields,
        )


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(str(v) for v in obj)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    if isinstance(exc, TallyError):
        fields["exc_code"] = exc.code
        fields["exc_retryable"] = exc.retryable
        for key, value in vars(exc).items():
            if not key.startswith("_"):
                fields[f"exc_{key}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory
# ---------------------------------------------------------------------------

_ROOT = "tally"


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``tally`` namespace, e.g. ``get_logger("engines.resolver")``."""
    return logging.getLogger(f"{_ROOT}.{name}")


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------

_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``tally`` logger.  Later calls are no-ops."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_ROOT)
    root.setLevel(level)
    root.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root.addHandler(h)


def reset_logging() -> None:
    """Undo ``configure_logging``.  Tests only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_ROOT)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    root.propagate = True
