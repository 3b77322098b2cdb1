"""HTTP surface for the authentication boundary: embed session start and token introspection."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from persona_gate.api_gate import PartnerContext, require_token
from persona_gate.config import Config, load_config
from persona_gate.errors import ErrorCode, ErrorResponse, GateError
from persona_gate.logging_setup import bind_correlation_id, correlation_id
from persona_gate.nonce_registry import NonceRegistry, RedisNonceRegistry, create_nonce_registry
from persona_gate.partners import PartnerRegistry
from persona_gate.scopes import ScopeAuthorizer
from persona_gate.session_gate import SessionGate
from persona_gate.validator import TokenValidator

logger = logging.getLogger("persona_gate")


class EmbedSessionRequest(BaseModel):
    token: str = Field(..., min_length=1)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind X-Request-ID (or a fresh id when absent or malformed) and echo it in the response."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        cid = bind_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = cid
        return response


def build_validator(config: Config) -> TokenValidator:
    """Wire partners (from the configured YAML file) and the nonce backend."""
    partners = PartnerRegistry.from_file(config.partners.path)
    return TokenValidator(partners, create_nonce_registry(config.nonce), config=config.auth)


def create_app(
    validator: TokenValidator | None = None,
    nonce_registry: NonceRegistry | None = None,
    config: Config | None = None,
) -> FastAPI:
    """Create the FastAPI app.

    Pass a ready TokenValidator (tests, embedding hosts) or let one be built
    from config. nonce_registry, when given, is connected/closed with the app
    lifespan; it should be the same registry the validator uses.
    """
    _cfg: Config = config if config is not None else load_config()
    if validator is None:
        validator = build_validator(_cfg)
        nonce_registry = validator.nonce_registry

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(nonce_registry, RedisNonceRegistry):
            await nonce_registry.connect()
        try:
            yield
        finally:
            if nonce_registry is not None:
                await nonce_registry.close()

    app = FastAPI(title="persona-gate", description="Partner token validation for avatar sessions", lifespan=lifespan)
    app.state.validator = validator
    app.state.scope_authorizer = ScopeAuthorizer()
    app.state.session_gate = SessionGate(validator)

    app.add_middleware(CorrelationIdMiddleware)

    # --- Exception handlers ---

    @app.exception_handler(GateError)
    async def gate_error_handler(request: Request, exc: GateError) -> JSONResponse:
        headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse.from_gate_error(exc, correlation_id.get("")).model_dump(),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        # Field locations only: input values may contain a token
        locations = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        err = GateError(ErrorCode.VALIDATION_ERROR, "Request validation failed", details={"fields": locations})
        return JSONResponse(
            status_code=err.status_code,
            content=ErrorResponse.from_gate_error(err, correlation_id.get("")).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", type(exc).__name__)
        return JSONResponse(status_code=500, content=ErrorResponse.internal(correlation_id.get("")).model_dump())

    # --- Routes ---

    @app.get("/health")
    async def health():
        """Liveness probe."""
        return {"status": "ok"}

    @app.post("/v1/embed/sessions")
    async def start_embed_session(body: EmbedSessionRequest):
        """Validate an embed token. 200 with session.started, 401 with session.ended."""
        event = await app.state.session_gate.start(body.token)
        return JSONResponse(status_code=200 if event.started else 401, content=event.public_payload())

    @app.get("/v1/auth/token")
    async def introspect_token(ctx: PartnerContext = Depends(require_token())):
        """Echo the authenticated partner, subject and effective scopes."""
        return {"success": True, "data": ctx.model_dump()}

    return app
