"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two places a session token can come from, checked in priority order:
  1. "session" cookie -- set by the login routes (HTTP-only, SameSite=strict).
  2. Authorization: Bearer <token> header -- scripts and API clients.

try_get_session() is the soft variant (returns None on failure).
require_session() wraps it and raises Unauthorized (401).
require_admin() wraps require_session() and raises Forbidden (403).

client_identity() extracts the network identity the login throttle keys on.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.exceptions import Forbidden, Unauthorized
from auth.gateway import AuthGateway
from auth.models import SessionClaims
from auth.tokens import SESSION_COOKIE_NAME
from core.config import get_settings


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def session_token(request: Request) -> str | None:
    """Return the raw session token from cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_session(request: Request) -> SessionClaims | None:
    """Verify the request's session token. Never raises.

    The request guard middleware stores the claims it already verified on
    request.state; reuse them instead of verifying the signature twice.
    """
    claims = getattr(request.state, "session", None)
    if claims is not None:
        return claims
    return get_gateway(request).verify_session(session_token(request))


def require_session(request: Request) -> SessionClaims:
    """Require a valid session. Raises Unauthorized (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionClaims = Depends(require_session)): ...
    """
    claims = try_get_session(request)
    if claims is None:
        raise Unauthorized()
    return claims


def require_admin(request: Request) -> SessionClaims:
    """Require an admin session. 401 if unauthenticated, 403 if not admin."""
    claims = require_session(request)
    if not claims.is_admin:
        raise Forbidden()
    return claims


def client_identity(request: Request) -> str:
    """Network identity of the client, as the login throttle keys it.

    Forwarded headers are honoured only when the socket peer is listed in
    TRUSTED_PROXIES. Then the order is: first X-Forwarded-For hop,
    X-Real-IP, CF-Connecting-IP. Otherwise the socket peer itself, then the
    literal "unknown". The value is hashed before it is stored.
    """
    peer = request.client.host if request.client and request.client.host else None
    if peer is not None and peer in get_settings().trusted_proxies:
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if forwarded:
            return forwarded
        for header in ("x-real-ip", "cf-connecting-ip"):
            value = request.headers.get(header, "").strip()
            if value:
                return value
    return peer or "unknown"
