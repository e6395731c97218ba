"""Structured logging helpers for the rebalance engine."""

from __future__ import annotations

import json
import logging
import math
import sys
import time
from typing import Any, Dict


def _default(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    return str(value)


def _finite(value: Any) -> Any:
    # JSON has no Infinity; keep the payload parseable
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    return value


def jlog(logger: logging.Logger, event: str, /, level: int = logging.INFO, **kv: Any) -> None:
    """Emit a compact JSON log line with a consistent schema."""
    if not logger.isEnabledFor(level):
        return
    payload: Dict[str, Any] = {
        "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "event": event,
    }
    payload.update({k: _finite(v) for k, v in kv.items()})
    logger.log(level, json.dumps(payload, separators=(",", ":"), default=_default))


class JsonFormatter(logging.Formatter):
    """Render log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        base: Dict[str, Any] = {
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    """Install a JSON formatter on the package logger (CLI entry point only)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("defi_rebalancer")
    root.handlers.clear()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(handler)
    root.propagate = False
