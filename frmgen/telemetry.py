from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Mapping

log = logging.getLogger("frmgen.telemetry")

_SECRET_HEADERS = {"authorization", "x-api-key", "x-goog-api-key"}
_REDACTED = "[REDACTED]"


@contextmanager
def timed(stage: str, ctx: Dict[str, Any] | None = None):
    """Context manager that logs elapsed ms for the given stage."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        payload = {"stage": stage, "ms": elapsed_ms}
        if ctx:
            payload.update(ctx)
        log.info("timing %s %sms", stage, elapsed_ms, extra=payload)


def redact_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Return a copy of headers with credential values masked."""
    redacted: Dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() in _SECRET_HEADERS:
            redacted[name] = "Bearer " + _REDACTED if str(value).startswith("Bearer ") else _REDACTED
        else:
            redacted[name] = value
    return redacted


def payload_size(obj: Any) -> int:
    """Length of the compact JSON encoding, used in event data."""
    try:
        return len(json.dumps(obj, ensure_ascii=False))
    except (TypeError, ValueError):
        return len(str(obj))
