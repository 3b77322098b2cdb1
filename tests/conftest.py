"""Shared pytest fixtures for persona-gate test suite."""

from __future__ import annotations

from typing import Any

import pytest

from persona_gate.config import AuthConfig
from persona_gate.models import API_AUDIENCE, EMBED_AUDIENCE, PartnerConfig
from persona_gate.nonce_registry import InMemoryNonceRegistry
from persona_gate.partners import PartnerRegistry
from persona_gate.signing import issue_token
from persona_gate.validator import TokenValidator

SECRET = b"acme-shared-secret-for-tests-0123456789"
OTHER_SECRET = b"globex-shared-secret-for-tests-98765432"

# Fixed instants from the documented walkthrough (2024-01-01T00:00:00Z)
IAT = 1704067200
EXP = 1704070800


def embed_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "iss": "acme",
        "sub": "user-42",
        "aud": EMBED_AUDIENCE,
        "iat": IAT,
        "exp": EXP,
        "nonce": "n1",
    }
    payload.update(overrides)
    return payload


def api_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "iss": "acme",
        "sub": "backend-service",
        "aud": API_AUDIENCE,
        "iat": IAT,
        "exp": EXP,
        "scope": ["experiences:read"],
    }
    payload.update(overrides)
    return payload


def make_token(payload: dict[str, Any], secret: bytes = SECRET) -> str:
    return issue_token(payload, secret)


@pytest.fixture
def acme() -> PartnerConfig:
    return PartnerConfig(
        partner_id="acme",
        shared_secret=SECRET,
        allowed_audiences=frozenset({EMBED_AUDIENCE, API_AUDIENCE}),
        granted_scopes=frozenset({"experiences:read", "sessions:read"}),
    )


@pytest.fixture
def globex() -> PartnerConfig:
    return PartnerConfig(
        partner_id="globex",
        shared_secret=OTHER_SECRET,
        allowed_audiences=frozenset({EMBED_AUDIENCE}),
    )


@pytest.fixture
def partners(acme, globex) -> PartnerRegistry:
    return PartnerRegistry([acme, globex])


@pytest.fixture
def nonce_registry() -> InMemoryNonceRegistry:
    return InMemoryNonceRegistry()


@pytest.fixture
def validator(partners, nonce_registry) -> TokenValidator:
    return TokenValidator(partners, nonce_registry, config=AuthConfig())
