"""HS256 signing and verification: JWT encode for partner tooling, constant-time verify."""

from __future__ import annotations

import secrets
import time
from typing import Any, Mapping, Optional

import jwt
from jwt.algorithms import HMACAlgorithm

from persona_gate.models import API_AUDIENCE, EMBED_AUDIENCE

ALGORITHM = "HS256"

_HS256 = HMACAlgorithm(HMACAlgorithm.SHA256)


def is_supported_algorithm(alg: Any) -> bool:
    """Only HS256 is accepted. Never 'none', never a case variant."""
    return alg == ALGORITHM


def verify_signature(signing_input: bytes, signature: bytes, secret: bytes) -> bool:
    """HMAC-SHA256 over signing_input, compared with hmac.compare_digest."""
    if not secret:
        return False
    return _HS256.verify(signing_input, secret, signature)


# --- Token minting (partner tooling, CLI, tests) ---

def issue_token(claims: Mapping[str, Any], secret: bytes | str) -> str:
    """Sign and return a compact token string with header {"alg":"HS256","typ":"JWT"}."""
    return jwt.encode(dict(claims), secret, algorithm=ALGORITHM)


def embed_claims(
    partner_id: str,
    subject: str,
    ttl: int = 3600,
    now: Optional[int] = None,
    nonce: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
    audience: str = EMBED_AUDIENCE,
) -> dict[str, Any]:
    """Payload for an embed session token. A fresh random nonce is generated unless given."""
    iat = int(time.time()) if now is None else now
    claims: dict[str, Any] = {
        "iss": partner_id,
        "sub": subject,
        "aud": audience,
        "iat": iat,
        "exp": iat + ttl,
        "nonce": nonce or secrets.token_urlsafe(16),
    }
    if meta is not None:
        claims["meta"] = meta
    return claims


def api_claims(
    partner_id: str,
    subject: str,
    scopes: list[str],
    ttl: int = 3600,
    now: Optional[int] = None,
    audience: str = API_AUDIENCE,
) -> dict[str, Any]:
    """Payload for a partner REST API token."""
    iat = int(time.time()) if now is None else now
    return {
        "iss": partner_id,
        "sub": subject,
        "aud": audience,
        "iat": iat,
        "exp": iat + ttl,
        "scope": list(scopes),
    }
