"""Scope authorization for the partner REST API flow."""

from __future__ import annotations

import logging

from persona_gate.errors import ReasonCode
from persona_gate.logging_setup import gate_fields
from persona_gate.models import Invalid, Valid, ValidationResult

logger = logging.getLogger("persona_gate.scopes")

# Every scope a partner can be contracted for; partner files are checked against it
KNOWN_SCOPES: frozenset[str] = frozenset({
    "experiences:read",
    "experiences:write",
    "sessions:read",
    "transcripts:read",
    "analytics:read",
    "users:read",
})


def unknown_scopes(scopes: frozenset[str] | set[str]) -> list[str]:
    """Scopes outside KNOWN_SCOPES, sorted."""
    return sorted(set(scopes) - KNOWN_SCOPES)


class ScopeAuthorizer:
    """Stateless check of one required scope against a validated token.

    A scope is granted only when the token claims it AND the partner's catalog
    contains it, so a token minted with over-broad scopes cannot exceed what
    the partner is contracted for.
    """

    def authorize(self, result: ValidationResult, required_scope: str) -> ValidationResult:
        if not isinstance(result, Valid):
            return result

        claims, partner = result.claims, result.partner
        if required_scope not in claims.scope:
            logger.info(
                "scopes: %s token for %s lacks %s", partner.partner_id, claims.subject, required_scope,
                extra=gate_fields(partner_id=partner.partner_id, required_scope=required_scope,
                                  reason=ReasonCode.INSUFFICIENT_SCOPE),
            )
            return Invalid(reason=ReasonCode.INSUFFICIENT_SCOPE)
        if required_scope not in partner.granted_scopes:
            logger.warning(
                "scopes: %s token claims %s outside the partner catalog", partner.partner_id, required_scope,
                extra=gate_fields(partner_id=partner.partner_id, required_scope=required_scope,
                                  reason=ReasonCode.INSUFFICIENT_SCOPE),
            )
            return Invalid(reason=ReasonCode.INSUFFICIENT_SCOPE)
        return result

    def effective_scopes(self, result: Valid) -> list[str]:
        """Token scopes that the partner catalog also allows, in token order."""
        return [s for s in result.claims.scope if s in result.partner.granted_scopes]
