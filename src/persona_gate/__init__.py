"""persona-gate: partner token validation for the avatar streaming platform.

Validates partner-signed HS256 tokens for the embed (session) and API flows,
with nonce-based replay protection and scope authorization.
"""

from persona_gate.errors import ReasonCode
from persona_gate.models import FlowKind, Invalid, PartnerConfig, TokenClaims, Valid, ValidationResult
from persona_gate.nonce_registry import InMemoryNonceRegistry, NonceRegistry, RedisNonceRegistry
from persona_gate.partners import PartnerRegistry
from persona_gate.scopes import ScopeAuthorizer
from persona_gate.validator import TokenValidator

__all__ = [
    "FlowKind",
    "InMemoryNonceRegistry",
    "Invalid",
    "NonceRegistry",
    "PartnerConfig",
    "PartnerRegistry",
    "ReasonCode",
    "RedisNonceRegistry",
    "ScopeAuthorizer",
    "TokenClaims",
    "TokenValidator",
    "Valid",
    "ValidationResult",
]
