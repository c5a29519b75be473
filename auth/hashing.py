"""
auth/hashing.py -- One-way hashing of credential secrets (tokens / passwords).

Work factor comes from Settings.bcrypt_rounds (default 12). Every call to
hash_secret() draws a fresh salt, so the same secret never hashes to the same
string twice. checkpw() compares in constant time.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import bcrypt

from core.config import get_settings

# bcrypt only looks at the first 72 bytes and current releases raise on
# anything longer, so callers validate against this before hashing.
MAX_SECRET_BYTES = 72


def hash_secret(secret: str) -> str:
    """Return a salted bcrypt hash of the given secret."""
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str, hashed: str | None) -> bool:
    """Return True if the secret matches the stored hash.

    A missing or malformed hash is a mismatch, never an exception -- callers
    treat it exactly like a wrong secret.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), hashed.encode("utf-8"))
    except (TypeError, ValueError):
        return False


# Timing equalization dummy hash [C1].
# Verified against whenever the identity does not exist, so an unknown
# identity costs the same bcrypt work as a wrong secret.
_DUMMY_HASH: str = hash_secret("presensi_timing_dummy")


def burn_verify(secret: str) -> None:
    """Run a full bcrypt verification whose result is discarded."""
    verify_secret(secret, _DUMMY_HASH)
