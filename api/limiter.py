"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the login routes
(to apply per-route limits with @limiter.limit()).

This is a coarse per-IP request cap in front of the login endpoints. It does
not replace auth/throttle.py, which counts failed logins and enforces
lockouts; it only keeps a single client from hammering bcrypt.

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module would
get its own isolated counter and rate limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for login routes, read from LOGIN_RATE_LIMIT at request time."""
    return get_settings().login_rate_limit
