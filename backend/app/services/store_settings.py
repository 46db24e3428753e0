# backend/app/services/store_settings.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.errors import NotFound, ValidationFailed
from backend.app.models import Event, StoreSettings
from backend.app.services import audit

log = logging.getLogger(__name__)

EDITABLE = ("enabled", "currency", "welcome_message", "download_enabled", "theme", "products")


def defaults() -> Dict[str, Any]:
    return {
        "enabled": True,
        "currency": settings.CURRENCY,
        "welcome_message": None,
        "download_enabled": False,
        "theme": {},
        "products": [],
    }


def serialize(row: Optional[StoreSettings], event_id: Optional[str] = None) -> dict:
    if row is None:
        return {"id": None, "event_id": event_id, **defaults(), "updated_at": None}
    return {
        "id": row.id,
        "event_id": row.event_id,
        "enabled": row.enabled,
        "currency": row.currency,
        "welcome_message": row.welcome_message,
        "download_enabled": row.download_enabled,
        "theme": row.theme or {},
        "products": row.products or [],
        "updated_at": row.updated_at,
    }


def _row(db: Session, event_id: Optional[str]) -> Optional[StoreSettings]:
    stmt = select(StoreSettings)
    stmt = stmt.where(StoreSettings.event_id.is_(None) if event_id is None else StoreSettings.event_id == event_id)
    return db.scalar(stmt)


def get_settings(db: Session, event_id: Optional[str] = None) -> dict:
    """Per-event settings fall back to the global row, then to defaults."""
    row = _row(db, event_id) if event_id else None
    if row is None:
        row = _row(db, None)
        if row is not None and event_id:
            return {**serialize(row), "event_id": event_id, "inherited": True}
    return serialize(row, event_id)


def put_settings(
    db: Session, values: Dict[str, Any], event_id: Optional[str] = None, actor: Optional[str] = None
) -> dict:
    if event_id and db.get(Event, event_id) is None:
        raise NotFound("Evento no encontrado")
    currency = values.get("currency")
    if currency is not None and (len(currency) != 3 or not currency.isalpha()):
        raise ValidationFailed("Moneda inválida (código ISO de 3 letras)")
    products = values.get("products")
    if products is not None and not isinstance(products, list):
        raise ValidationFailed("products debe ser una lista")

    row = _row(db, event_id)
    if row is None:
        row = StoreSettings(event_id=event_id, **defaults())
        db.add(row)
    for key in EDITABLE:
        if key in values and values[key] is not None:
            val = values[key]
            setattr(row, key, val.upper() if key == "currency" else val)
    db.flush()
    audit.log_action(
        db,
        "store_settings.update",
        "store_settings",
        row.id,
        actor=actor,
        details={"event_id": event_id, "fields": sorted(k for k in values if k in EDITABLE)},
    )
    db.commit()
    return serialize(row)
