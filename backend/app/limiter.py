# backend/app/limiter.py
"""
Shared slowapi limiter.

One instance for the whole app so every router counts against the same
storage: in-memory for dev/tests, Redis (Upstash) via RATE_LIMIT_STORAGE_URI
in production. Clients are keyed by the first X-Forwarded-For hop when the
app sits behind a proxy.
"""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from backend.app.config import settings


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=client_key,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=bool(settings.RATE_LIMIT_ENABLED),
    headers_enabled=False,
)
