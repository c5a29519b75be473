"""
auth/exceptions.py -- Error taxonomy for the authentication core.

Raised by auth/gateway.py and translated into HTTP responses by a single
exception handler in api/main.py. Each class carries the HTTP status and the
machine-readable code used in the error envelope, so the route layer never
has to choose wording.

Authentication failures deliberately share one message. Whether the identity
was unknown or the secret was wrong is never visible to the caller.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base exception for all authentication errors."""

    status_code: int = 400
    code: str = "auth_error"

    def __init__(self, message: str = "Authentication error") -> None:
        self.message = message
        super().__init__(self.message)


class ValidationFailed(AuthError):
    """Malformed input, rejected before any storage or throttle access."""

    status_code = 400
    code = "validation_error"


class InvalidCredentials(AuthError):
    """Unknown identity or wrong secret. The two are indistinguishable."""

    status_code = 401
    code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class Unauthorized(AuthError):
    """Missing, expired or tampered session."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required.") -> None:
        super().__init__(message)


class RateLimited(AuthError):
    """Too many failed logins from one client identity."""

    status_code = 429
    code = "rate_limited"

    def __init__(
        self,
        retry_after: int,
        message: str = "Too many login attempts. Please try again later.",
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class Forbidden(AuthError):
    """Valid session, insufficient role."""

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Admin access required.") -> None:
        super().__init__(message)


class Conflict(AuthError):
    status_code = 409
    code = "conflict"


class StorageUnavailable(AuthError):
    """Credential or throttle backend failed. The request is denied."""

    status_code = 503
    code = "service_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable.") -> None:
        super().__init__(message)
