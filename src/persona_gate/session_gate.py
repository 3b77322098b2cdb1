"""Embed flow gate: turns a session token into a session.started / session.ended event."""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from persona_gate.errors import ReasonCode
from persona_gate.logging_setup import gate_fields
from persona_gate.models import FlowKind, Valid
from persona_gate.validator import TokenValidator

logger = logging.getLogger("persona_gate.session")

AUTH_FAILED = "auth_failed"


class SessionEventType(str, Enum):
    STARTED = "session.started"
    ENDED = "session.ended"


class SessionEvent(BaseModel):
    """Event posted to the embedding page (postMessage / WebView bridge)."""
    type: SessionEventType
    session_id: Optional[str] = None
    partner_id: Optional[str] = None
    subject: Optional[str] = None
    expires_at: Optional[float] = None
    meta: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    # Internal reason for server-side logs; never serialised to the partner
    auth_reason: Optional[ReasonCode] = Field(default=None, exclude=True)

    @property
    def started(self) -> bool:
        return self.type is SessionEventType.STARTED

    def public_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class SessionGate:
    """Validates embed tokens and opens sessions behind the authentication boundary."""

    def __init__(self, validator: TokenValidator) -> None:
        self._validator = validator

    async def start(self, token: str, now: Optional[float] = None) -> SessionEvent:
        result = await self._validator.validate(token, FlowKind.EMBED, now=now)
        if not isinstance(result, Valid):
            logger.info("session: auth failed (%s)", result.reason.value, extra=gate_fields(reason=result.reason))
            return SessionEvent(type=SessionEventType.ENDED, reason=AUTH_FAILED, auth_reason=result.reason)

        claims = result.claims
        event = SessionEvent(
            type=SessionEventType.STARTED,
            session_id=uuid.uuid4().hex,
            partner_id=result.partner.partner_id,
            subject=claims.subject,
            expires_at=claims.expires_at,
            meta=dict(claims.meta) if claims.meta is not None else None,
        )
        logger.info(
            "session: started %s for %s/%s", event.session_id, event.partner_id, event.subject,
            extra=gate_fields(session_id=event.session_id, partner_id=event.partner_id, flow=FlowKind.EMBED),
        )
        return event
