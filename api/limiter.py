"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same counter
store. If this were instantiated in each module separately, each module
would get its own isolated counter and rate limits would never trigger.

This is the coarse per-IP limit on anonymous endpoints. The per-account
login and reset limits live in cache/limiter.py, on Redis, keyed by email.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)
