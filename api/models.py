"""
API request and response models for Presensi REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies accept the camelCase keys the browser front end sends
(adminId, currentToken, ...) as well as the snake_case field names.

Secret length is NOT validated here: the gateway does it, so that a short
token produces the same specific 400 message on every path.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditLogEntry, SessionClaims, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    nisn: str = Field(max_length=64)
    token: str = Field(max_length=255)


class AdminLoginRequest(BaseModel):
    """Request body for POST /api/v1/admin/login."""

    model_config = ConfigDict(populate_by_name=True)

    admin_id: str = Field(alias="adminId", max_length=64)
    password: str = Field(max_length=255)


class ChangeTokenRequest(BaseModel):
    """Request body for PATCH /api/v1/auth/change-token."""

    model_config = ConfigDict(populate_by_name=True)

    current_token: str = Field(alias="currentToken", max_length=255)
    new_token: str = Field(alias="newToken", max_length=255)


class ResetTokenRequest(BaseModel):
    """Request body for PATCH /api/v1/admin/reset-token."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", max_length=64)
    new_token: str = Field(alias="newToken", max_length=255)


class UserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users."""

    model_config = ConfigDict(populate_by_name=True)

    nisn: str = Field(max_length=64)
    token: str = Field(max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)
    is_admin: bool = Field(default=False, alias="isAdmin")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class SessionUser(BaseModel):
    """Public view of the account that just logged in. Never includes the hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    nisn: str
    name: Optional[str] = None
    is_admin: bool

    @classmethod
    def from_user(cls, user: User) -> "SessionUser":
        return cls(id=user.id, nisn=user.nisn, name=user.name, is_admin=user.is_admin)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: SessionUser
    expires_in: int


class MessageResponse(BaseModel):
    message: str


class MeResponse(BaseModel):
    """Claims of the current session."""

    model_config = ConfigDict(frozen=True)

    id: str
    nisn: str
    is_admin: bool
    expires_at: int

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "MeResponse":
        return cls(
            id=claims.identity_id,
            nisn=claims.public_identifier,
            is_admin=claims.is_admin,
            expires_at=claims.expires_at,
        )


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    nisn: str
    name: Optional[str] = None
    is_admin: bool
    created_at: str = ""

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            nisn=user.nisn,
            name=user.name,
            is_admin=user.is_admin,
            created_at=user.created_at or "",
        )


class CreateUserResponse(BaseModel):
    message: str
    user: UserResponse


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: str
    actor_nisn: Optional[str] = None
    action: str
    metadata: dict
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            actor_id=entry.actor_id,
            actor_nisn=entry.actor_nisn,
            action=entry.action,
            metadata=entry.metadata,
            created_at=entry.created_at or "",
        )


class ErrorDetail(BaseModel):
    """Machine-readable error body. detail carries extra data such as retry_after."""

    code: str
    message: str
    detail: Optional[str] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Envelope for every error response: {"error": {...}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    status: str = "ok"
    version: str
