"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the throttle
and the gateway do the work; these only own the shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass
class User:
    """An account that can prove knowledge of a credential secret.

    id is an opaque uuid4 hex string assigned by the store. nisn is the
    human-facing public identifier (students use their NISN, admins an
    admin ID stored in the same column).

    token_hash is the bcrypt hash of the user's token. It is None only for
    rows imported without a credential; such accounts cannot log in.
    """

    nisn: str
    is_admin: bool = False
    id: str | None = None
    name: str | None = None
    token_hash: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token.

    issued_at / expires_at are POSIX seconds, copied from the iat / exp claims.
    """

    identity_id: str
    public_identifier: str
    is_admin: bool
    issued_at: int
    expires_at: int


@dataclass
class ThrottleEntry:
    """Failed-login bookkeeping for one hashed client identity.

    key is the HMAC of the client's network identity, never the raw address.
    locked_until is None while the entry is still accumulating failures.
    """

    key: str
    count: int
    first_attempt_at: float
    locked_until: float | None = None


@dataclass(frozen=True)
class ThrottleStatus:
    blocked: bool
    retry_after: int = 0


@dataclass
class AuditLogEntry:
    """Record of an admin action (user_create, token_reset)."""

    actor_id: str
    action: str
    actor_nisn: str | None = None
    metadata: dict = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None


class TargetClass(str, Enum):
    """How the request guard treats a path."""

    public = "public"
    auth_entry = "auth_entry"
    member_page = "member_page"
    admin_page = "admin_page"
    member_api = "member_api"
    admin_api = "admin_api"


class DecisionAction(str, Enum):
    allow = "allow"
    redirect = "redirect"
    reject = "reject"


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating one request against the access table.

    location is set for redirects, status (401 or 403) for rejections.
    """

    action: DecisionAction
    location: str | None = None
    status: int | None = None

    @classmethod
    def allow(cls) -> Decision:
        return cls(DecisionAction.allow)

    @classmethod
    def redirect(cls, location: str) -> Decision:
        return cls(DecisionAction.redirect, location=location)

    @classmethod
    def reject(cls, status: int) -> Decision:
        return cls(DecisionAction.reject, status=status)
