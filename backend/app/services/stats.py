# backend/app/services/stats.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.models import Event, Order, Photo, Subject


def dashboard_stats(db: Session, event_id: Optional[str] = None) -> dict:
    def _scoped(stmt, model):
        return stmt.where(model.event_id == event_id) if event_id else stmt

    events_total = db.scalar(select(func.count(Event.id))) or 0
    events_active = db.scalar(select(func.count(Event.id)).where(Event.status == "active")) or 0

    photos_total = db.scalar(_scoped(select(func.count(Photo.id)), Photo)) or 0
    photos_approved = db.scalar(_scoped(select(func.count(Photo.id)).where(Photo.approved.is_(True)), Photo)) or 0
    subjects_total = db.scalar(_scoped(select(func.count(Subject.id)), Subject)) or 0

    by_status = dict(
        db.execute(_scoped(select(Order.status, func.count(Order.id)), Order).group_by(Order.status)).all()
    )
    revenue = (
        db.scalar(
            _scoped(
                select(func.coalesce(func.sum(Order.total_cents), 0)).where(
                    Order.status.in_(("approved", "delivered"))
                ),
                Order,
            )
        )
        or 0
    )

    return {
        "events": {"total": events_total, "active": events_active},
        "photos": {
            "total": photos_total,
            "approved": photos_approved,
            "pending": photos_total - photos_approved,
        },
        "subjects": {"total": subjects_total},
        "orders": {
            "total": sum(by_status.values()),
            "by_status": {s: by_status.get(s, 0) for s in ("pending", "approved", "failed", "cancelled", "delivered")},
        },
        "revenue": {"total_cents": int(revenue), "total": round(int(revenue) / 100, 2)},
    }
