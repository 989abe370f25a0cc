from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

# Redis-backed counters when available so limits hold across workers.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=get_settings().redis_url or "memory://",
)
