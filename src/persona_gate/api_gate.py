"""FastAPI dependencies guarding partner REST API routes.

The app must carry a TokenValidator on `app.state.validator` and a
ScopeAuthorizer on `app.state.scope_authorizer` (create_app wires both).

Usage:
    @router.get("/v1/experiences")
    async def list_experiences(ctx: PartnerContext = Depends(require_scope("experiences:read"))):
        ...
"""

from __future__ import annotations

from typing import Awaitable, Callable, Union

from fastapi import Request
from pydantic import BaseModel

from persona_gate.errors import ErrorCode, GateError
from persona_gate.models import FlowKind, Valid
from persona_gate.scopes import ScopeAuthorizer
from persona_gate.validator import TokenValidator


class PartnerContext(BaseModel):
    """Injected into route handlers via FastAPI Depends."""
    partner_id: str
    subject: str
    scopes: list[str]
    expires_at: Union[int, float]


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer ") or not auth_header[7:].strip():
        raise GateError(ErrorCode.AUTH_REQUIRED)
    return auth_header[7:].strip()


async def _validate_request(request: Request) -> Valid:
    validator: TokenValidator = request.app.state.validator
    result = await validator.validate(_bearer_token(request), FlowKind.API)
    if not isinstance(result, Valid):
        raise GateError.from_reason(result.reason)
    return result


def _context(request: Request, result: Valid) -> PartnerContext:
    authorizer: ScopeAuthorizer = request.app.state.scope_authorizer
    return PartnerContext(
        partner_id=result.partner.partner_id,
        subject=result.claims.subject,
        scopes=authorizer.effective_scopes(result),
        expires_at=result.claims.expires_at,
    )


def require_token() -> Callable[[Request], Awaitable[PartnerContext]]:
    """Dependency: any valid API-flow token, no particular scope."""

    async def dependency(request: Request) -> PartnerContext:
        return _context(request, await _validate_request(request))

    return dependency


def require_scope(scope: str) -> Callable[[Request], Awaitable[PartnerContext]]:
    """Dependency: valid API-flow token granting *scope* (401 / 403 otherwise)."""

    async def dependency(request: Request) -> PartnerContext:
        result = await _validate_request(request)
        authorizer: ScopeAuthorizer = request.app.state.scope_authorizer
        authorized = authorizer.authorize(result, scope)
        if not isinstance(authorized, Valid):
            raise GateError.from_reason(authorized.reason, details={"required_scope": scope})
        return _context(request, authorized)

    return dependency
