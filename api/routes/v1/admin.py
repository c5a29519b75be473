"""
api/routes/v1/admin.py -- Admin-only account management endpoints.

Routes:
  POST  /api/v1/admin/users          -- provision an account (audited: user_create)
  GET   /api/v1/admin/users          -- list accounts (hashes never leave the store)
  PATCH /api/v1/admin/reset-token    -- set a new token for an account (audited: token_reset)
  GET   /api/v1/admin/audit-logs     -- most recent audit entries

Every route depends on require_admin. The request guard middleware already
rejects these paths with 401/403 before routing; the dependency keeps each
handler safe on its own if the middleware is ever reordered.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    AuditLogResponse,
    CreateUserResponse,
    MessageResponse,
    ResetTokenRequest,
    UserCreate,
    UserResponse,
)
from auth.dependencies import get_gateway, require_admin
from auth.models import SessionClaims

router = APIRouter()


@router.post("/admin/users", response_model=CreateUserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    admin: SessionClaims = Depends(require_admin),
) -> CreateUserResponse:
    """Create an account with an initial token. Duplicate NISN returns 409."""
    user = get_gateway(request).create_identity(
        admin,
        nisn=body.nisn,
        secret=body.token,
        name=body.name,
        is_admin=body.is_admin,
    )
    return CreateUserResponse(message="User created", user=UserResponse.from_user(user))


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(request: Request, admin: SessionClaims = Depends(require_admin)) -> list[UserResponse]:
    """List all accounts ordered by NISN."""
    users = get_gateway(request).users.list_users()
    return [UserResponse.from_user(u) for u in users]


@router.patch("/admin/reset-token", response_model=MessageResponse)
def reset_token(
    request: Request,
    body: ResetTokenRequest,
    admin: SessionClaims = Depends(require_admin),
) -> MessageResponse:
    """Replace another account's token without knowing the old one."""
    get_gateway(request).reset_secret(admin, body.user_id, body.new_token)
    return MessageResponse(message="Token reset")


@router.get("/admin/audit-logs", response_model=list[AuditLogResponse])
def audit_logs(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    admin: SessionClaims = Depends(require_admin),
) -> list[AuditLogResponse]:
    """Return recent admin actions, newest first."""
    entries = get_gateway(request).users.list_audit_logs(limit=limit)
    return [AuditLogResponse.from_entry(e) for e in entries]
