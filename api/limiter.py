"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules (to apply per-route limits with @limiter.limit()). One shared
instance means one counter store; per-module instances would each count
separately and never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Limit string for POST /auth/login, read from Settings at request time."""
    return get_settings().login_rate_limit


def password_reset_rate_limit() -> str:
    return get_settings().password_reset_rate_limit
