"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the route modules
that apply per-route limits with @limiter.limit() (auth login, catalog sync
trigger, app launch).

A single shared instance means all routes share one in-memory counter store.
Tests call limiter.reset() between modules so counts do not leak.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
