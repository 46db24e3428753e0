# backend/app/services/audit.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.models import AuditLog, utcnow
from backend.app.telemetry import telemetry

log = logging.getLogger(__name__)


def log_action(
    db: Session,
    action: str,
    resource_type: str,
    resource_id: Optional[str] = None,
    actor: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    ip: Optional[str] = None,
    severity: str = "info",
) -> AuditLog:
    """Add an audit row to the session; the caller's commit persists it."""
    entry = AuditLog(
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        actor=actor,
        details=details or {},
        ip_address=ip,
        severity=severity,
    )
    db.add(entry)
    telemetry.log_json(
        "audit",
        level=severity,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        actor=actor,
    )
    return entry


def recent(
    db: Session,
    limit: int = 50,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
) -> List[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc()).limit(max(1, min(limit, 500)))
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if resource_type:
        stmt = stmt.where(AuditLog.resource_type == resource_type)
    return list(db.scalars(stmt))


def cleanup(db: Session, older_than_days: Optional[int] = None) -> int:
    days = older_than_days if older_than_days is not None else settings.AUDIT_RETENTION_DAYS
    cutoff = utcnow() - timedelta(days=days)
    res = db.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
    db.commit()
    removed = res.rowcount or 0
    log.info(f"[audit] removed {removed} entries older than {days} days")
    return removed
