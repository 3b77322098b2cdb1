"""Token validation pipeline shared by the embed and API flows.

Checks run in a fixed order and stop at the first failure:

  decode → algorithm → issuer → signature → audience → expiry / not-before
  → maximum age → nonce (embed only)

The algorithm is checked before any secret is looked up. Only iss is read
before the signature is verified, to select the partner secret. The nonce is
consumed last, so a request that fails any other check never burns it.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from persona_gate.claims import decode_token
from persona_gate.config import AuthConfig
from persona_gate.errors import NonceStoreError, ReasonCode, TokenDecodeError
from persona_gate.logging_setup import gate_fields
from persona_gate.models import FlowKind, Invalid, TokenClaims, Valid, ValidationResult
from persona_gate.nonce_registry import NonceRegistry
from persona_gate.partners import PartnerRegistry
from persona_gate.signing import is_supported_algorithm, verify_signature

logger = logging.getLogger("persona_gate.validator")

_BEARER_PREFIX = "Bearer "


class TokenValidator:
    """Single entry point turning a raw token string into a ValidationResult."""

    def __init__(
        self,
        partners: PartnerRegistry,
        nonce_registry: NonceRegistry,
        config: AuthConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._partners = partners
        self._nonces = nonce_registry
        self._config = config or AuthConfig()
        self._clock = clock

    @property
    def config(self) -> AuthConfig:
        return self._config

    @property
    def nonce_registry(self) -> NonceRegistry:
        return self._nonces

    def audience_for(self, flow: FlowKind) -> str:
        if flow is FlowKind.EMBED:
            return self._config.embed_audience
        return self._config.api_audience

    async def validate(
        self, token: str, flow: FlowKind, now: Optional[float] = None
    ) -> ValidationResult:
        if now is None:
            now = self._clock()
        if isinstance(token, str) and token.startswith(_BEARER_PREFIX):
            token = token[len(_BEARER_PREFIX):]

        try:
            decoded = decode_token(token, flow)
        except TokenDecodeError as exc:
            return self._reject(ReasonCode.MALFORMED, flow, detail=str(exc))

        if not is_supported_algorithm(decoded.algorithm):
            return self._reject(ReasonCode.BAD_SIGNATURE, flow, detail="unsupported alg")

        claims = decoded.claims
        partner = self._partners.get(claims.issuer)
        if partner is None or not partner.active:
            return self._reject(ReasonCode.BAD_ISSUER, flow, claims)

        if not verify_signature(decoded.signing_input, decoded.signature, partner.secret_bytes()):
            return self._reject(ReasonCode.BAD_SIGNATURE, flow, claims)

        if claims.audience != self.audience_for(flow) or claims.audience not in partner.allowed_audiences:
            return self._reject(ReasonCode.BAD_AUDIENCE, flow, claims)

        skew = self._config.clock_skew_seconds
        if not now < claims.expires_at + skew:
            return self._reject(ReasonCode.EXPIRED, flow, claims)
        if not now >= claims.issued_at - skew:
            return self._reject(ReasonCode.NOT_YET_VALID, flow, claims)

        # Exactly max_token_age old still passes
        if now - claims.issued_at > self._config.max_token_age_seconds:
            return self._reject(ReasonCode.WINDOW_EXCEEDED, flow, claims)

        if flow is FlowKind.EMBED:
            reason = await self._consume_nonce(claims, now)
            if reason is not None:
                return self._reject(reason, flow, claims)

        logger.debug(
            "validator: accepted %s token from %s", flow.value, claims.issuer,
            extra=gate_fields(partner_id=partner.partner_id, flow=flow),
        )
        return Valid(claims=claims, partner=partner)

    async def _consume_nonce(self, claims: TokenClaims, now: float) -> Optional[ReasonCode]:
        if claims.nonce is None:
            return ReasonCode.MALFORMED
        # Live for as long as the token would still pass the exp and max-age checks
        record_expiry = min(
            claims.expires_at + self._config.clock_skew_seconds,
            claims.issued_at + self._config.max_token_age_seconds,
        )
        try:
            first_use = await self._nonces.check_and_consume(claims.issuer, claims.nonce, record_expiry, now)
        except NonceStoreError as exc:
            logger.error(
                "validator: nonce registry failure, rejecting token from %s: %s", claims.issuer, exc,
                extra=gate_fields(partner_id=claims.issuer, reason=ReasonCode.NONCE_STORE_UNAVAILABLE),
            )
            return ReasonCode.NONCE_STORE_UNAVAILABLE
        if not first_use:
            return ReasonCode.REPLAYED_NONCE
        return None

    def _reject(
        self,
        reason: ReasonCode,
        flow: FlowKind,
        claims: TokenClaims | None = None,
        detail: str = "",
    ) -> Invalid:
        # Only claim values from decoded payloads are logged; never the token or a secret
        issuer = claims.issuer if claims is not None else None
        level = logging.WARNING if reason in (ReasonCode.BAD_SIGNATURE, ReasonCode.REPLAYED_NONCE) else logging.INFO
        logger.log(
            level,
            "validator: rejected %s token reason=%s iss=%r%s",
            flow.value, reason.value, issuer or "-", f" ({detail})" if detail else "",
            extra=gate_fields(issuer=issuer, flow=flow, reason=reason),
        )
        return Invalid(reason=reason)
