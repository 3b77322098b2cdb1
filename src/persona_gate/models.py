"""Auth models for persona-gate: flows, partner configs, token claims, validation results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, SecretBytes

from persona_gate.errors import ReasonCode

EMBED_AUDIENCE = "pixels.persona-ai.ai"
API_AUDIENCE = "api.persona-ai.ai"


class FlowKind(str, Enum):
    EMBED = "embed"  # iframe / WebView avatar session
    API = "api"      # partner REST API


# Claims each flow needs on top of iss/sub/aud/iat/exp
FLOW_REQUIRED_CLAIMS: dict[FlowKind, tuple[str, ...]] = {
    FlowKind.EMBED: ("nonce",),
    FlowKind.API: ("scope",),
}


class PartnerConfig(BaseModel):
    """Registered partner. Immutable: updates replace the whole record."""

    model_config = ConfigDict(frozen=True)

    partner_id: str = Field(..., min_length=1)
    shared_secret: SecretBytes
    allowed_audiences: frozenset[str] = frozenset({EMBED_AUDIENCE, API_AUDIENCE})
    granted_scopes: frozenset[str] = frozenset()
    active: bool = True

    def secret_bytes(self) -> bytes:
        return self.shared_secret.get_secret_value()


class TokenClaims(BaseModel):
    """Decoded (not yet trusted) token payload."""

    model_config = ConfigDict(frozen=True)

    issuer: str
    subject: str
    audience: str
    issued_at: Union[int, float]
    expires_at: Union[int, float]
    scope: tuple[str, ...] = ()
    nonce: Optional[str] = None
    meta: Optional[Mapping[str, Any]] = None  # opaque, passed through to the session layer


class DecodedToken(BaseModel):
    """Claims plus the raw material the signature check needs."""

    model_config = ConfigDict(frozen=True)

    header: Mapping[str, Any]
    claims: TokenClaims
    signing_input: bytes
    signature: bytes

    @property
    def algorithm(self) -> Any:
        return self.header.get("alg")


class Valid(BaseModel):
    """Successful validation: trusted claims and the partner that signed them."""

    model_config = ConfigDict(frozen=True)

    claims: TokenClaims
    partner: PartnerConfig

    def __bool__(self) -> bool:
        return True


class Invalid(BaseModel):
    """Rejected validation with a stable reason code."""

    model_config = ConfigDict(frozen=True)

    reason: ReasonCode

    def __bool__(self) -> bool:
        return False


ValidationResult = Union[Valid, Invalid]
