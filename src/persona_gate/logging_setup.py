"""Logging for persona-gate.

Every record carries the current request's correlation id. Gate decisions
pass partner, flow and reason through ``extra=`` (see `gate_fields`), and the
JSON formatter emits them as top-level keys so rejections can be queried
without parsing message text.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from persona_gate.config import Config

# Per-request correlation ID, echoed to partners as the envelope's request_id
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

# Caller-supplied request ids end up in logs and responses
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

GATE_FIELDS = ("issuer", "partner_id", "flow", "reason", "required_scope", "session_id")


def bind_correlation_id(incoming: str | None = None) -> str:
    """Use the caller's request id when it is well formed, else mint one. Sets the contextvar."""
    cid = incoming if incoming and _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
    correlation_id.set(cid)
    return cid


def gate_fields(**fields: Any) -> dict[str, Any]:
    """Build an ``extra=`` mapping for a gate decision. None values are dropped."""
    extra: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in GATE_FIELDS:
            raise ValueError(f"unknown log field {name!r}")
        if value is not None:
            extra[name] = value.value if isinstance(value, Enum) else value
    return extra


class _CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("")  # type: ignore[attr-defined]
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message, correlation id and any gate fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = getattr(record, "correlation_id", "")
        if cid:
            payload["correlation_id"] = cid
        for name in GATE_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(config: "Config") -> None:
    """Install a single root handler: JSON lines when logging.format is 'json', plain text otherwise."""
    log_cfg = config.logging
    level = getattr(logging, log_cfg.level.upper(), logging.WARNING)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(_CorrelationIdFilter())
    if log_cfg.format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s [%(correlation_id)s] %(message)s"))
    root.addHandler(handler)

    # uvicorn access lines and redis client chatter
    for noisy in ("uvicorn.access", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
