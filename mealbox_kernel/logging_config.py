"""
Structured JSON logging for the mealbox engine.

Every record under the ``mealbox`` logger namespace is written as one JSON
object per line: ``ts``, ``level``, ``logger``, ``message``, the run-scoped
fields currently bound in ``LogContext``, then any ``extra={...}`` fields.
Records logged with ``exc_info`` also carry ``exc_type``, ``exc_message``,
the exception's ``code`` and structured attributes (``exc_<name>``) and the
formatted ``traceback``.

Usage::

    logger = get_logger("batch.runner")
    with LogContext.bind(job_id=str(job.id), job_type="credit_expiry"):
        logger.info("batch_completed", extra={"items": 50})
"""

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
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import UUID

ROOT_LOGGER_NAME = "mealbox"

# ---------------------------------------------------------------------------
# Run-scoped context
# ---------------------------------------------------------------------------

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar("mealbox_log_context", default=_EMPTY)


class LogContext:
    """Fields stamped on every record logged in the current thread or task.

    Only ``FIELDS`` are accepted; anything else passed to ``set`` or
    ``bind`` is dropped.
    """

    FIELDS = ("correlation_id", "job_id", "job_type", "actor_id")

    @classmethod
    def _merged(cls, values: Mapping[str, str | None]) -> Mapping[str, str]:
        merged = dict(_context.get())
        merged.update({k: v for k, v in values.items() if k in cls.FIELDS and v is not None})
        return MappingProxyType(merged)

    @classmethod
    def set(cls, **values: str | None) -> None:
        _context.set(cls._merged(values))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set(_EMPTY)

    @classmethod
    def bind(cls, **values: str | None) -> "_BoundContext":
        """Bind fields for a ``with`` block; the previous fields come back on exit."""
        return _BoundContext(cls._merged, values)


class _BoundContext:
    def __init__(self, merge, values: Mapping[str, str | None]):
        self._merge = merge
        self._values = values
        self._token: Token | None = None

    def __enter__(self) -> type[LogContext]:
        self._token = _context.set(self._merge(self._values))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        if self._token is not None:
            _context.reset(self._token)
            self._token = None


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                entry.setdefault(key, value)

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            entry["exc_type"] = type(exc).__name__
            entry["exc_message"] = str(exc)
            code = getattr(exc, "code", None)
            if code is not None:
                entry["exc_code"] = code
            # structured attributes of MealboxError subclasses
            for name, value in vars(exc).items():
                if not name.startswith("_") and name != "code":
                    entry[f"exc_{name}"] = value
            entry["traceback"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=_to_json)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger ``mealbox.<name>``; configuration is inherited from the root."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


_setup_lock = threading.Lock()
_is_configured = False


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``mealbox`` logger.  Later calls do nothing."""
    global _is_configured
    with _setup_lock:
        if _is_configured:
            return
        _is_configured = True

    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(handler)


def reset_logging() -> None:
    """Drop handlers and forget the configuration.  Tests only."""
    global _is_configured
    with _setup_lock:
        _is_configured = False
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.WARNING)
