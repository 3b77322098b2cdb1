"""Reason codes, HTTP error codes and the partner-facing error envelope."""

from __future__ import annotations

__all__ = [
    "ReasonCode",
    "ErrorCode",
    "GateError",
    "ErrorResponse",
    "ERROR_STATUS_MAP",
    "TokenDecodeError",
    "NonceStoreError",
    "error_code_for_reason",
]

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel


class ReasonCode(str, Enum):
    """Internal rejection reasons. Stable: collaborators switch on these values."""

    MALFORMED = "malformed"
    BAD_ISSUER = "bad_issuer"
    BAD_SIGNATURE = "bad_signature"
    BAD_AUDIENCE = "bad_audience"
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    WINDOW_EXCEEDED = "window_exceeded"
    REPLAYED_NONCE = "replayed_nonce"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    NONCE_STORE_UNAVAILABLE = "nonce_store_unavailable"


class ErrorCode(str, Enum):
    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
    AUTH_INSUFFICIENT_SCOPE = "AUTH_INSUFFICIENT_SCOPE"
    AUTH_UNAVAILABLE = "AUTH_UNAVAILABLE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Map ErrorCode → default HTTP status code
ERROR_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.AUTH_REQUIRED: 401,
    ErrorCode.AUTH_INVALID_TOKEN: 401,
    ErrorCode.AUTH_TOKEN_EXPIRED: 401,
    ErrorCode.AUTH_INSUFFICIENT_SCOPE: 403,
    ErrorCode.AUTH_UNAVAILABLE: 503,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Partner-visible messages. malformed and bad_signature share one message so
# callers cannot tell a corrupt payload from a secret mismatch.
_PUBLIC_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.AUTH_REQUIRED: "Authentication required",
    ErrorCode.AUTH_INVALID_TOKEN: "Invalid authentication token",
    ErrorCode.AUTH_TOKEN_EXPIRED: "Authentication token has expired",
    ErrorCode.AUTH_INSUFFICIENT_SCOPE: "Token does not grant the required scope",
    ErrorCode.AUTH_UNAVAILABLE: "Authentication temporarily unavailable",
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred",
}


def error_code_for_reason(reason: ReasonCode) -> ErrorCode:
    """Collapse internal reasons onto the partner-facing API error codes."""
    if reason is ReasonCode.EXPIRED:
        return ErrorCode.AUTH_TOKEN_EXPIRED
    if reason is ReasonCode.INSUFFICIENT_SCOPE:
        return ErrorCode.AUTH_INSUFFICIENT_SCOPE
    if reason is ReasonCode.NONCE_STORE_UNAVAILABLE:
        return ErrorCode.AUTH_UNAVAILABLE
    return ErrorCode.AUTH_INVALID_TOKEN


class TokenDecodeError(ValueError):
    """Token string is not a structurally valid token."""


class NonceStoreError(RuntimeError):
    """Nonce registry could not record a nonce. Callers must fail closed."""


class GateError(Exception):
    """Structured gate rejection that maps to a JSON error envelope."""

    def __init__(
        self,
        code: ErrorCode,
        message: str | None = None,
        details: dict | None = None,
        status_code: int | None = None,
    ) -> None:
        message = message or _PUBLIC_MESSAGES.get(code, code.value)
        super().__init__(message)
        self.code = code
        self.message = message
        self.details: dict = details or {}
        self.status_code: int = status_code if status_code is not None else ERROR_STATUS_MAP.get(code, 500)

    @classmethod
    def from_reason(cls, reason: ReasonCode, details: dict | None = None) -> "GateError":
        return cls(error_code_for_reason(reason), details=details)


class ErrorResponse(BaseModel):
    """Serialisable envelope for all error responses."""

    success: bool = False
    error: dict  # {code, message, details, request_id}
    timestamp: str

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    @classmethod
    def from_gate_error(cls, exc: GateError, request_id: str = "") -> "ErrorResponse":
        return cls(
            error={
                "code": exc.code.value,
                "message": exc.message,
                "details": exc.details,
                "request_id": request_id,
            },
            timestamp=cls._now(),
        )

    @classmethod
    def internal(cls, request_id: str = "", message: str = "An unexpected error occurred") -> "ErrorResponse":
        return cls(
            error={
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": message,
                "details": {},
                "request_id": request_id,
            },
            timestamp=cls._now(),
        )
