# backend/app/routers/status.py
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.db import get_db
from backend.app.services.signed_url_cache import url_cache
from backend.app.telemetry import telemetry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/status")
def status(db: Session = Depends(get_db)):
    """
    Service health plus runtime counters.
      - database: reachable or not
      - telemetry: uploads/checkouts/webhooks counters and last error
      - url_cache: signed URL cache hit/miss stats
    """
    try:
        db.execute(text("SELECT 1"))
        database = True
    except Exception as e:
        database = False
        telemetry.set_error(f"database: {e}")
        logger.error(f"[status] database check failed: {e}")

    body = {
        "ok": database,
        "environment": settings.ENVIRONMENT,
        "storage_backend": settings.STORAGE_BACKEND,
        "database": database,
        "telemetry": telemetry.get_stats(),
        "url_cache": url_cache.stats(),
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(body, status_code=200 if database else 503)
