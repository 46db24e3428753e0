# backend/app/dependencies/auth.py
"""
Admin authentication dependency.

Accepted credentials (``Authorization: Bearer <x>``):
  * the static ADMIN_API_TOKEN (scripts, CI, the admin panel's server side)
  * a Supabase Auth access token whose user email is listed in ADMIN_EMAILS

With no ADMIN_API_TOKEN and no Supabase configured, auth is skipped outside
production and everything is denied in production.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from backend.app.config import settings
from backend.app.utils.security import safe_compare

log = logging.getLogger(__name__)


@dataclass
class AdminIdentity:
    id: str
    email: Optional[str]
    method: str  # token|supabase|dev

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "method": self.method}


def _unauthorized() -> HTTPException:
    return HTTPException(status_code=401, detail={"ok": False, "error": "No autorizado"})


def _bearer(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        return None
    return parts[1].strip()


_supabase_client = None


def _supabase():
    global _supabase_client
    if _supabase_client is None:
        from supabase import create_client

        _supabase_client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    return _supabase_client


def _supabase_admin(token: str) -> Optional[AdminIdentity]:
    if not settings.supabase_configured or not settings.admin_emails:
        return None
    try:
        res = _supabase().auth.get_user(token)
    except Exception as e:
        log.info(f"[auth] supabase token rejected: {e}")
        return None
    user = getattr(res, "user", None)
    email = (getattr(user, "email", None) or "").lower()
    if not user or email not in settings.admin_emails:
        return None
    return AdminIdentity(id=str(user.id), email=email, method="supabase")


def require_admin(request: Request) -> AdminIdentity:
    configured = bool(settings.ADMIN_API_TOKEN.strip()) or (
        settings.supabase_configured and bool(settings.admin_emails)
    )
    if not configured:
        if settings.is_production:
            log.error("[auth] no admin credentials configured in production; denying")
            raise _unauthorized()
        return AdminIdentity(id="dev", email=None, method="dev")

    token = _bearer(request)
    if not token:
        raise _unauthorized()

    if settings.ADMIN_API_TOKEN.strip() and safe_compare(token, settings.ADMIN_API_TOKEN.strip()):
        identity = AdminIdentity(id="api-token", email=None, method="token")
    else:
        identity = _supabase_admin(token)
        if identity is None:
            raise _unauthorized()

    request.state.admin = identity
    return identity

