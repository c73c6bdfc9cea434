"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply per-route limits with @limiter.limit()). One shared instance means
one counter store for every route.

Limits are keyed by client address. The login limit is configurable through
LOGIN_RATE_LIMIT; slowapi accepts a callable so the value is read from the
settings at request time rather than at import.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_limit() -> str:
    return get_settings().login_rate_limit


# Confirmation, reset and 2FA endpoints take guessable or emailed secrets.
SENSITIVE_LIMIT = "20/minute"
