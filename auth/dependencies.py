"""
auth/dependencies.py -- FastAPI Depends() helpers over the identity core.

The routes themselves live in the coordinator service. This module only turns
a Starlette Request into the inputs the core understands:

  device_context()        Request -> DeviceContext (client address + headers)
  try_get_claims()        soft variant; returns None when unauthenticated
  get_current_claims()    raises HTTP 401 with the stable reason code
  require_admin()         raises HTTP 403 if the role is not "admin"

The TokenService is read from request.app.state.tokens, wired once by the
coordinator's lifespan handler.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AccessTokenClaims, DeviceContext
from auth.tokens import TokenService


def device_context(request: Request) -> DeviceContext:
    """Collect the fingerprinting inputs from the request.

    X-Forwarded-For is not read. Behind a proxy, the coordinator
    must configure Starlette's ProxyHeadersMiddleware so request.client
    already holds the real address.
    """
    headers = request.headers
    return DeviceContext(
        ip_address=request.client.host if request.client else None,
        user_agent=headers.get("user-agent"),
        accept_language=headers.get("accept-language", ""),
        accept_encoding=headers.get("accept-encoding", ""),
    )


def _verify(request: Request) -> tuple[AccessTokenClaims | None, str]:
    tokens: TokenService = request.app.state.tokens
    token = tokens.extract_from_header(request.headers.get("Authorization"))
    if token is None:
        return None, "missing_credentials"
    result = tokens.verify(token)
    if not result.ok:
        return None, result.error.value
    return result.claims, ""


def try_get_claims(request: Request) -> AccessTokenClaims | None:
    """Return verified claims for the bearer token, or None. Never raises."""
    claims, _reason = _verify(request)
    return claims


def get_current_claims(request: Request) -> AccessTokenClaims:
    """Require a valid bearer token. Raises HTTP 401 carrying the reason code.

    Use as a FastAPI dependency:
        @router.get("/orders")
        async def route(claims: AccessTokenClaims = Depends(get_current_claims)): ...
    """
    claims, reason = _verify(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": reason, "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return claims


def require_admin(request: Request) -> AccessTokenClaims:
    """Require the admin role. 401 if unauthenticated, 403 otherwise."""
    claims = get_current_claims(request)
    if claims.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return claims
