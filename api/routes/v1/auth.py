"""
api/routes/v1/auth.py -- Member authentication REST endpoints.

Routes:
  POST  /api/v1/auth/login          -- NISN + token login; sets session cookie
  POST  /api/v1/admin/login         -- admin ID + password login; sets session cookie
  POST  /api/v1/auth/logout         -- clears cookie; 200
  GET   /api/v1/auth/me             -- current session claims (requires auth)
  PATCH /api/v1/auth/change-token   -- self-service token rotation (requires auth)

Security:
  [H2] Login routes carry a coarse per-IP slowapi limit (LOGIN_RATE_LIMIT) on
       top of the failed-login throttle inside the gateway.
  [C1] Unknown identity and wrong secret take the same bcrypt time and return
       the same message -- AuthGateway.login() handles both, never inline it.
  [M5] Cache-Control: no-store on login responses.

Errors are raised as auth.exceptions.AuthError subclasses and rendered by
the AuthError handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AdminLoginRequest,
    ChangeTokenRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    SessionUser,
)
from auth.dependencies import client_identity, get_gateway, require_session
from auth.gateway import AuthGateway, LoginResult
from auth.models import SessionClaims
from auth.tokens import session_cookie

# Auth policy:
# - POST  /api/v1/auth/login:         public -- login endpoint must be unauthenticated
# - POST  /api/v1/admin/login:        public -- admin login, role filtered in the store query
# - POST  /api/v1/auth/logout:        public -- clearing a cookie needs no prior auth
# - GET   /api/v1/auth/me:            requires auth (require_session)
# - PATCH /api/v1/auth/change-token:  requires auth (require_session)
router = APIRouter()


def _login_response(result: LoginResult, message: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            message=message,
            user=SessionUser.from_user(result.user),
            expires_in=result.claims.expires_at - result.claims.issued_at,
        ).model_dump(),
    )
    session_cookie(result.token).apply(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate a member with NISN and token; set the session cookie."""
    gateway: AuthGateway = get_gateway(request)
    result = gateway.login(body.nisn, body.token, client_identity(request))
    return _login_response(result, "Login successful")


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/admin/login", response_model=LoginResponse)
def admin_login(request: Request, body: AdminLoginRequest) -> JSONResponse:
    """Authenticate an admin. Member accounts fail exactly like unknown ones."""
    gateway: AuthGateway = get_gateway(request)
    result = gateway.login(body.admin_id, body.password, client_identity(request), admin_required=True)
    return _login_response(result, "Admin login successful")


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(request: Request) -> JSONResponse:
    """Clear the session cookie. Works the same with or without a session."""
    resp = JSONResponse(content={"message": "Logged out"})
    get_gateway(request).logout().apply(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(session: SessionClaims = Depends(require_session)) -> MeResponse:
    """Return identity information for the current session."""
    return MeResponse.from_claims(session)


@router.patch("/auth/change-token", response_model=MessageResponse)
def change_token(
    request: Request,
    body: ChangeTokenRequest,
    session: SessionClaims = Depends(require_session),
) -> MessageResponse:
    """Rotate the caller's own token after proving the current one."""
    get_gateway(request).change_secret(session, body.current_token, body.new_token)
    return MessageResponse(message="Token updated successfully")
