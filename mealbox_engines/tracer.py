"""
mealbox_engines.tracer -- debug trace of pure engine calls.

``@traced_engine(name, version, fields)`` logs one ``engine_call`` record
per invocation with the engine name and version, a short hash of the
selected keyword arguments and the elapsed time.  Positional arguments
are not hashed; engines that want a fingerprint take keyword-only
parameters.
"""

from __future__ import annotations

import functools
import hashlib
import time
from collections.abc import Callable, Mapping
from datetime import date
from typing import Any

from mealbox_kernel.logging_config import get_logger

logger = get_logger("engines.tracer")


def _stable(value: Any) -> str:
    if value is None:
        return "~"
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return "(" + ",".join(sorted(_stable(v) for v in value)) + ")"
    if isinstance(value, (list, tuple)):
        return "(" + ",".join(_stable(v) for v in value) + ")"
    return str(value)


def call_fingerprint(fields: tuple[str, ...], kwargs: Mapping[str, Any]) -> str:
    text = ";".join(f"{name}={_stable(kwargs.get(name))}" for name in fields)
    return hashlib.sha256(text.encode()).hexdigest()[:16]


def traced_engine(name: str, version: str, fields: tuple[str, ...] = ()) -> Callable:
    def decorate(func: Callable) -> Callable:
        @functools.wraps(func)
        def traced(*args: Any, **kwargs: Any) -> Any:
            started = time.perf_counter()
            result = func(*args, **kwargs)
            logger.debug("engine_call", extra={
                "engine": name,
                "engine_version": version,
                "fingerprint": call_fingerprint(fields, kwargs) if fields else None,
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 3),
            })
            return result

        return traced

    return decorate
