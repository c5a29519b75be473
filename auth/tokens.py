"""
auth/tokens.py -- Session JWTs, session cookie instructions, and token generation.

Security design decisions:
  JWT: python-jose with HS256. Sessions carry sub (identity id), nisn, is_admin,
       iat and exp. The server keeps no session table; a session is valid
       exactly when its signature checks out under JWT_SECRET and exp has not
       passed. verify() returns None on any failure -- the caller cannot tell
       a forged token from an expired one, and does not need to.

  Expiry: checked here against the codec's clock rather than inside jose, so
       issue time and verification time come from the same source. A token is
       invalid from the exp second onward.

  Cookie: HTTP-only, SameSite=strict, Secure unless DEBUG, max-age equal to
       the session lifetime. Logout is an instruction to overwrite the cookie
       with an empty value and max-age 0; it needs no knowledge of the session.

  Generated tokens: used by the admin CLI when provisioning accounts. The
       alphabet drops look-alike characters (0/O, 1/l/I) so tokens survive
       being read aloud or copied from paper.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

from jose import JWTError, jwt

from auth.models import SessionClaims
from core.config import get_settings

logger = logging.getLogger("presensi.auth")

_ALGORITHM = "HS256"

SESSION_COOKIE_NAME = "session"
SESSION_LIFETIME_SECONDS = 8 * 60 * 60


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class SessionCodec:
    """Sign and verify stateless session tokens with one symmetric key.

    Usage:
        codec = SessionCodec(secret)
        token = codec.sign("3f2a...", "99887766", is_admin=False)
        claims = codec.verify(token)   # SessionClaims or None
    """

    def __init__(
        self,
        secret: str,
        lifetime_seconds: int = SESSION_LIFETIME_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("SessionCodec requires a signing secret.")
        self._secret = secret
        self.lifetime_seconds = lifetime_seconds
        self._clock = clock

    def sign(self, identity_id: str, public_identifier: str, is_admin: bool) -> str:
        """Encode a signed JWT with identity claims and a fixed-lifetime expiry."""
        issued_at = int(self._clock())
        payload = {
            "sub": identity_id,
            "nisn": public_identifier,
            "is_admin": bool(is_admin),
            "iat": issued_at,
            "exp": issued_at + self.lifetime_seconds,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str | None) -> SessionClaims | None:
        """Decode and verify a JWT. Returns SessionClaims, or None on any failure."""
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        return self._claims_from_payload(payload)

    def _claims_from_payload(self, payload: dict) -> SessionClaims | None:
        sub = payload.get("sub")
        nisn = payload.get("nisn")
        is_admin = payload.get("is_admin")
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(sub, str) or not isinstance(nisn, str) or not isinstance(is_admin, bool):
            return None
        # bool is an int subclass; a boolean exp is malformed, not "1 second after epoch"
        if not isinstance(exp, int) or isinstance(exp, bool) or not isinstance(iat, int):
            return None
        if self._clock() >= exp:
            return None
        return SessionClaims(
            identity_id=sub,
            public_identifier=nisn,
            is_admin=is_admin,
            issued_at=iat,
            expires_at=exp,
        )


@lru_cache
def get_session_codec() -> SessionCodec:
    """Return the process-wide codec built from Settings.

    Settings refuses to load without JWT_SECRET, so reaching this function at
    startup is the fail-fast check for the signing key.
    """
    settings = get_settings()
    return SessionCodec(settings.jwt_secret, settings.session_lifetime_seconds)


# ---------------------------------------------------------------------------
# Cookie instructions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionCookie:
    """What to write into the session cookie. Apply it to any Starlette response.

    A cleared cookie is just an instance with an empty value and max_age=0,
    which makes logout a pure function of nothing.
    """

    value: str
    max_age: int
    secure: bool = True
    name: str = SESSION_COOKIE_NAME

    def apply(self, response) -> None:
        response.set_cookie(
            self.name,
            value=self.value,
            max_age=self.max_age,
            path="/",
            httponly=True,
            samesite="strict",
            secure=self.secure,
        )


def session_cookie(token: str) -> SessionCookie:
    """Cookie instruction carrying a freshly signed session."""
    settings = get_settings()
    return SessionCookie(value=token, max_age=settings.session_lifetime_seconds, secure=settings.secure_cookies)


def cleared_session_cookie() -> SessionCookie:
    """Cookie instruction that blanks and expires the session cookie."""
    return SessionCookie(value="", max_age=0, secure=get_settings().secure_cookies)


# ---------------------------------------------------------------------------
# Token generation
# ---------------------------------------------------------------------------

_TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"


def generate_token(length: int = 16, alphabet: str = _TOKEN_ALPHABET) -> str:
    """Return a random token drawn uniformly from alphabet."""
    if length <= 0:
        raise ValueError("Token length must be positive")
    return "".join(secrets.choice(alphabet) for _ in range(length))
