"""
auth/gateway.py -- Login, per-request authorization, and credential rotation.

The gateway is the only module that combines the credential store, the
hasher, the session codec and the login throttle. Routes call it; it never
sees a Request object.

Request guard:
  classify_path() sorts a path into one of six target classes and
  evaluate_request() applies the access table:

    target          no session          member session        admin session
    public          allow               allow                 allow
    auth entry      allow               -> /dashboard         -> /admin
    member page     -> /login?next=     allow                 allow
    admin page      -> /login?next=     -> /dashboard         allow
    member API      401                 allow                 allow
    admin API       401                 403                   allow

  A session that fails verification is treated exactly like no session.

Login order matters:
  1. cheap validation (no storage, no throttle)
  2. throttle check (a locked client never reaches the credential store)
  3. credential lookup + bcrypt verify, with a dummy verify for unknown ids [C1]
  4. success resets the throttle and signs a session

Member and admin login are the same flow; admin_required only adds a role
filter to the lookup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.exceptions import (
    Conflict,
    Forbidden,
    InvalidCredentials,
    RateLimited,
    StorageUnavailable,
    ValidationFailed,
)
from auth.hashing import MAX_SECRET_BYTES, burn_verify, hash_secret, verify_secret
from auth.models import AuditLogEntry, Decision, SessionClaims, TargetClass, User
from auth.throttle import LoginThrottle
from auth.tokens import SessionCodec, SessionCookie, cleared_session_cookie

logger = logging.getLogger("presensi.gateway")

LOGIN_PAGE = "/login"
MEMBER_HOME = "/dashboard"
ADMIN_HOME = "/admin"

_AUTH_ENTRY_PAGES = ("/login", "/admin/login")
_MEMBER_PAGES = ("/dashboard", "/profile")
_PUBLIC_APIS = (
    "/api/v1/auth/login",
    "/api/v1/admin/login",
    "/api/v1/auth/logout",
    "/api/v1/health",
)


class CredentialRepository(Protocol):
    """The slice of auth.store.UserStore the gateway relies on."""

    def find_credential_by_identity(self, nisn: str) -> User | None: ...

    def find_credential_by_identity_and_role(self, nisn: str, admin_required: bool) -> User | None: ...

    def get_by_id(self, user_id: str) -> User | None: ...

    def update_credential_hash(self, user_id: str, new_hash: str) -> bool: ...

    def create_user(self, user: User) -> str: ...

    def record_audit_log(self, entry: AuditLogEntry) -> int: ...


@dataclass(frozen=True)
class LoginResult:
    token: str
    claims: SessionClaims
    user: User


# ---------------------------------------------------------------------------
# Request classification and the access table
# ---------------------------------------------------------------------------


def _under(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def classify_path(path: str) -> TargetClass:
    """Map a request path onto the target class used by evaluate_request()."""
    path = path.rstrip("/") or "/"
    if path in _AUTH_ENTRY_PAGES:
        return TargetClass.auth_entry
    if path in _PUBLIC_APIS:
        return TargetClass.public
    if _under(path, "/api/v1/admin"):
        return TargetClass.admin_api
    if _under(path, "/api"):
        return TargetClass.member_api
    if _under(path, "/admin"):
        return TargetClass.admin_page
    if any(_under(path, prefix) for prefix in _MEMBER_PAGES):
        return TargetClass.member_page
    return TargetClass.public


def _change_secret_identity(identity_id: str) -> str:
    # Own namespace so it never collides with a network identity.
    return f"change-token:{identity_id}"


def _login_redirect(path: str) -> str:
    # Only the path is ever echoed back; the login page re-validates it before use.
    return f"{LOGIN_PAGE}?next={quote(path, safe='/')}"


def evaluate_request(claims: SessionClaims | None, target: TargetClass, path: str = "/") -> Decision:
    """Decide allow / redirect / reject for one request."""
    if target is TargetClass.public:
        return Decision.allow()

    if target is TargetClass.auth_entry:
        if claims is None:
            return Decision.allow()
        return Decision.redirect(ADMIN_HOME if claims.is_admin else MEMBER_HOME)

    if target is TargetClass.member_page:
        return Decision.allow() if claims is not None else Decision.redirect(_login_redirect(path))

    if target is TargetClass.admin_page:
        if claims is None:
            return Decision.redirect(_login_redirect(path))
        return Decision.allow() if claims.is_admin else Decision.redirect(MEMBER_HOME)

    if target is TargetClass.member_api:
        return Decision.allow() if claims is not None else Decision.reject(401)

    if target is TargetClass.admin_api:
        if claims is None:
            return Decision.reject(401)
        return Decision.allow() if claims.is_admin else Decision.reject(403)

    # Unknown target classes are denied.
    return Decision.reject(401)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class AuthGateway:
    """Orchestrates login, logout, authorization and credential rotation.

    Usage:
        gateway = AuthGateway(user_store, throttle, get_session_codec())
        result = gateway.login("99887766", "verysecure", client_identity="203.0.113.7")
        decision = gateway.authorize(token, "/dashboard")
    """

    def __init__(
        self,
        users: CredentialRepository,
        throttle: LoginThrottle,
        codec: SessionCodec,
        min_secret_length: int = 8,
    ) -> None:
        self.users = users
        self.throttle = throttle
        self.codec = codec
        self.min_secret_length = min_secret_length

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def verify_session(self, token: str | None) -> SessionClaims | None:
        return self.codec.verify(token)

    def authorize(self, token: str | None, path: str) -> Decision:
        """Verify the session (if any), classify path, and apply the access table."""
        return evaluate_request(self.codec.verify(token), classify_path(path), path)

    def logout(self) -> SessionCookie:
        """Return the cleared-cookie instruction. Same result with or without a session."""
        return cleared_session_cookie()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        public_identifier: str,
        secret: str,
        client_identity: str,
        admin_required: bool = False,
    ) -> LoginResult:
        """Authenticate and mint a session.

        Raises ValidationFailed, RateLimited, InvalidCredentials or
        StorageUnavailable. Unknown identity and wrong secret raise the same
        InvalidCredentials with the same message.
        """
        if not public_identifier or not public_identifier.strip():
            raise ValidationFailed("Admin ID is required" if admin_required else "NISN is required")
        self._validate_secret(secret, "Password" if admin_required else "Token")

        status = self._guard_storage(self.throttle.check, client_identity)
        if status.blocked:
            logger.info("Login refused for locked client %s", self.throttle.key_for(client_identity)[:12])
            raise RateLimited(status.retry_after)

        user = self._guard_storage(
            self.users.find_credential_by_identity_and_role, public_identifier.strip(), admin_required
        )
        if user is None or not user.token_hash:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            burn_verify(secret)
            self._fail(client_identity)
        if not verify_secret(secret, user.token_hash):
            self._fail(client_identity)

        self._guard_storage(self.throttle.reset, client_identity)
        token = self.codec.sign(user.id, user.nisn, user.is_admin)
        claims = self.codec.verify(token)
        logger.info("Login succeeded for user %s (admin=%s)", user.id, user.is_admin)
        return LoginResult(token=token, claims=claims, user=user)

    def _fail(self, client_identity: str) -> None:
        self._guard_storage(self.throttle.register_failure, client_identity)
        logger.info("Login failed for client %s", self.throttle.key_for(client_identity)[:12])
        raise InvalidCredentials()

    # ------------------------------------------------------------------
    # Credential rotation and provisioning
    # ------------------------------------------------------------------

    def change_secret(self, claims: SessionClaims, current_secret: str, new_secret: str) -> None:
        """Self-service rotation: the current secret must be proven first.

        Wrong guesses go through the login throttle, keyed on the account
        rather than the network, so a stolen session cannot brute-force the
        current secret.
        """
        if not isinstance(current_secret, str) or not current_secret:
            raise ValidationFailed("Current and new tokens are required")
        self._validate_secret(new_secret, "New token")

        throttle_identity = _change_secret_identity(claims.identity_id)
        status = self._guard_storage(self.throttle.check, throttle_identity)
        if status.blocked:
            raise RateLimited(status.retry_after)

        user = self._guard_storage(self.users.get_by_id, claims.identity_id)
        if user is None or not verify_secret(current_secret, user.token_hash):
            self._guard_storage(self.throttle.register_failure, throttle_identity)
            logger.info("Token change refused for user %s: current token mismatch", claims.identity_id)
            raise InvalidCredentials("Current token is incorrect")

        self._guard_storage(self.throttle.reset, throttle_identity)
        updated = self._guard_storage(self.users.update_credential_hash, user.id, hash_secret(new_secret))
        if not updated:
            raise StorageUnavailable("Failed to update token")
        logger.info("User %s rotated their token", user.id)

    def reset_secret(self, admin: SessionClaims, identity_id: str, new_secret: str) -> None:
        """Admin-initiated rotation for another account. Audited as token_reset."""
        self._require_admin(admin)
        if not identity_id:
            raise ValidationFailed("userId is required")
        self._validate_secret(new_secret, "New token")

        updated = self._guard_storage(self.users.update_credential_hash, identity_id, hash_secret(new_secret))
        if not updated:
            raise ValidationFailed("User not found")
        self._audit(admin, "token_reset", {"userId": identity_id})
        logger.info("Admin %s reset the token of user %s", admin.identity_id, identity_id)

    def create_identity(
        self,
        admin: SessionClaims,
        nisn: str,
        secret: str,
        name: str | None = None,
        is_admin: bool = False,
    ) -> User:
        """Provision an account with an initial secret. Audited as user_create."""
        self._require_admin(admin)
        if not nisn or not nisn.strip():
            raise ValidationFailed("NISN is required")
        self._validate_secret(secret, "Token")

        user = User(nisn=nisn.strip(), name=name, is_admin=is_admin, token_hash=hash_secret(secret))
        try:
            user.id = self.users.create_user(user)
        except IntegrityError as exc:
            raise Conflict("User with this NISN already exists") from exc
        except SQLAlchemyError as exc:
            logger.exception("Credential store failure while creating user")
            raise StorageUnavailable() from exc
        self._audit(admin, "user_create", {"userId": user.id, "nisn": user.nisn})
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_secret(self, secret: str, label: str) -> None:
        if not isinstance(secret, str) or len(secret) < self.min_secret_length:
            raise ValidationFailed(f"{label} must be at least {self.min_secret_length} characters")
        if len(secret.encode("utf-8")) > MAX_SECRET_BYTES:
            raise ValidationFailed(f"{label} must be at most {MAX_SECRET_BYTES} bytes")

    def _require_admin(self, claims: SessionClaims) -> None:
        if claims is None or not claims.is_admin:
            raise Forbidden("Forbidden")

    def _audit(self, admin: SessionClaims, action: str, metadata: dict) -> None:
        entry = AuditLogEntry(
            actor_id=admin.identity_id,
            actor_nisn=admin.public_identifier,
            action=action,
            metadata=metadata,
        )
        try:
            self.users.record_audit_log(entry)
        except SQLAlchemyError:
            # The action itself already happened; a missing audit row is logged, not fatal.
            logger.exception("Failed to record audit log for %s", action)

    def _guard_storage(self, fn, *args):
        """Call a storage operation, turning backend errors into StorageUnavailable."""
        try:
            return fn(*args)
        except SQLAlchemyError as exc:
            logger.exception("Storage failure in %s", getattr(fn, "__name__", repr(fn)))
            raise StorageUnavailable() from exc
