"""Structural token decoding. Nothing here is trusted until the signature is checked."""

from __future__ import annotations

import binascii
import json
import math
import re
from typing import Any, Optional

from jwt.utils import base64url_decode

from persona_gate.errors import TokenDecodeError
from persona_gate.models import FLOW_REQUIRED_CLAIMS, DecodedToken, FlowKind, TokenClaims

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_-]*$")
_MAX_TOKEN_LENGTH = 8192
_MAX_NUMERIC_DATE = 253402300799  # 9999-12-31T23:59:59Z


def _decode_segment(segment: str, what: str, allow_empty: bool = False) -> bytes:
    if not segment and not allow_empty:
        raise TokenDecodeError(f"{what} is empty")
    if not _SEGMENT_RE.match(segment):
        raise TokenDecodeError(f"{what} is not base64url")
    try:
        return base64url_decode(segment)
    except (binascii.Error, ValueError) as exc:
        raise TokenDecodeError(f"{what} is not base64url") from exc


def _decode_object(raw: bytes, what: str) -> dict[str, Any]:
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as exc:
        raise TokenDecodeError(f"{what} is not JSON") from exc
    if not isinstance(data, dict):
        raise TokenDecodeError(f"{what} is not a JSON object")
    return data


def _require_str(payload: dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value:
        raise TokenDecodeError(f"claim {name!r} must be a non-empty string")
    return value


def _require_number(payload: dict[str, Any], name: str) -> int | float:
    value = payload.get(name)
    # bool is an int subclass; true/false are not timestamps
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TokenDecodeError(f"claim {name!r} must be a NumericDate")
    # json.loads accepts Infinity, NaN and arbitrarily large integers
    if isinstance(value, float) and not math.isfinite(value):
        raise TokenDecodeError(f"claim {name!r} must be finite")
    if not 0 <= value <= _MAX_NUMERIC_DATE:
        raise TokenDecodeError(f"claim {name!r} is out of range")
    return value


def _parse_scope(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(value.split())
    if isinstance(value, list) and all(isinstance(s, str) for s in value):
        return tuple(value)
    raise TokenDecodeError("claim 'scope' must be a list of strings")


def decode_token(token: str, flow: Optional[FlowKind] = None) -> DecodedToken:
    """Split and decode a compact JWS into header, claims and signature bytes.

    When *flow* is given, the flow's required claims must also be present.
    Raises TokenDecodeError on any structural or type problem.
    """
    if not isinstance(token, str) or not token:
        raise TokenDecodeError("empty token")
    if len(token) > _MAX_TOKEN_LENGTH:
        raise TokenDecodeError("token too long")

    parts = token.split(".")
    if len(parts) != 3:
        raise TokenDecodeError("token must have three segments")
    header_seg, payload_seg, signature_seg = parts

    header = _decode_object(_decode_segment(header_seg, "header"), "header")
    payload = _decode_object(_decode_segment(payload_seg, "payload"), "payload")
    # alg=none tokens carry an empty signature; let the algorithm check reject them
    signature = _decode_segment(signature_seg, "signature", allow_empty=True)

    if not isinstance(header.get("alg"), str):
        raise TokenDecodeError("header 'alg' must be a string")

    issued_at = _require_number(payload, "iat")
    expires_at = _require_number(payload, "exp")
    if issued_at > expires_at:
        raise TokenDecodeError("iat is after exp")

    fields: dict[str, Any] = {
        "issuer": _require_str(payload, "iss"),
        "subject": _require_str(payload, "sub"),
        "audience": _require_str(payload, "aud"),
        "issued_at": issued_at,
        "expires_at": expires_at,
    }

    if "scope" in payload:
        fields["scope"] = _parse_scope(payload["scope"])
    if "nonce" in payload:
        fields["nonce"] = _require_str(payload, "nonce")
    if "meta" in payload and payload["meta"] is not None:
        if not isinstance(payload["meta"], dict):
            raise TokenDecodeError("claim 'meta' must be an object")
        fields["meta"] = payload["meta"]

    if flow is not None:
        for name in FLOW_REQUIRED_CLAIMS[flow]:
            if name not in payload:
                raise TokenDecodeError(f"{flow.value} token is missing claim {name!r}")

    return DecodedToken(
        header=header,
        claims=TokenClaims(**fields),
        signing_input=f"{header_seg}.{payload_seg}".encode("ascii"),
        signature=signature,
    )
