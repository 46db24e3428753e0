# backend/app/services/events.py
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import Event, Order, Photo, PriceList, PriceListItem, Subject, as_utc
from backend.app.services import audit

log = logging.getLogger(__name__)

EVENT_STATUSES = ("active", "inactive", "archived")


def serialize(event: Event, stats: Optional[Dict[str, int]] = None) -> dict:
    out = {
        "id": event.id,
        "name": event.name,
        "school": event.school,
        "date": event.date.isoformat() if event.date else None,
        "status": event.status,
        "created_by": event.created_by,
        "created_at": event.created_at,
        "updated_at": event.updated_at,
    }
    if stats is not None:
        out["stats"] = stats
    return out


def get_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if event is None:
        raise NotFound("Evento no encontrado")
    return event


def _event_stats(db: Session, event_id: str) -> Dict[str, int]:
    return {
        "photos": db.scalar(select(func.count(Photo.id)).where(Photo.event_id == event_id)) or 0,
        "subjects": db.scalar(select(func.count(Subject.id)).where(Subject.event_id == event_id)) or 0,
        "orders": db.scalar(select(func.count(Order.id)).where(Order.event_id == event_id)) or 0,
    }


def list_events(db: Session, status: Optional[str] = None, with_stats: bool = False) -> List[dict]:
    stmt = select(Event).order_by(Event.created_at.desc())
    if status:
        stmt = stmt.where(Event.status == status)
    return [serialize(e, _event_stats(db, e.id) if with_stats else None) for e in db.scalars(stmt)]


def create_event(
    db: Session,
    name: str,
    school: Optional[str] = None,
    event_date: Optional[date] = None,
    status: str = "active",
    actor: Optional[str] = None,
) -> Event:
    name = (name or "").strip()
    if len(name) < 2:
        raise ValidationFailed("El nombre del evento debe tener al menos 2 caracteres")
    if status not in EVENT_STATUSES:
        raise ValidationFailed("Estado de evento inválido")
    event = Event(name=name, school=school, date=event_date, status=status, created_by=actor)
    db.add(event)
    db.flush()
    audit.log_action(db, "event.create", "event", event.id, actor=actor, details={"name": name})
    db.commit()
    return event


def update_event(db: Session, event_id: str, actor: Optional[str] = None, **fields: Any) -> Event:
    event = get_event(db, event_id)
    if "status" in fields and fields["status"] not in EVENT_STATUSES:
        raise ValidationFailed("Estado de evento inválido")
    if "name" in fields:
        name = (fields["name"] or "").strip()
        if len(name) < 2:
            raise ValidationFailed("El nombre del evento debe tener al menos 2 caracteres")
        fields["name"] = name
    for key, val in fields.items():
        if key in ("name", "school", "date", "status"):
            setattr(event, key, val)
    audit.log_action(db, "event.update", "event", event.id, actor=actor, details={"fields": sorted(fields)})
    db.commit()
    return event


def delete_event(db: Session, event_id: str, actor: Optional[str] = None) -> None:
    event = get_event(db, event_id)
    orders = db.scalar(select(func.count(Order.id)).where(Order.event_id == event_id)) or 0
    if orders:
        raise Conflict("No se puede eliminar un evento con pedidos; archívelo en su lugar")
    audit.log_action(db, "event.delete", "event", event.id, actor=actor, details={"name": event.name})
    db.delete(event)
    db.commit()


# --- subjects ----------------------------------------------------------------
def serialize_subject(subject: Subject, include_token: bool = True) -> dict:
    expires_at = as_utc(subject.token_expires_at)
    return {
        "id": subject.id,
        "event_id": subject.event_id,
        "name": subject.name,
        "grade": subject.grade,
        "token": subject.token if include_token else None,
        "token_expires_at": expires_at.isoformat() if expires_at else None,
        "access_url": f"{settings.APP_BASE_URL.rstrip('/')}/f/{subject.token}" if include_token else None,
        "created_at": subject.created_at,
    }


def list_subjects(db: Session, event_id: str) -> List[Subject]:
    get_event(db, event_id)
    return list(db.scalars(select(Subject).where(Subject.event_id == event_id).order_by(Subject.name)))


# --- price lists -------------------------------------------------------------
def ensure_price_list(db: Session, event_id: str) -> PriceList:
    """Return the event's price list, creating the default single-item list when absent."""
    pl = db.scalar(select(PriceList).where(PriceList.event_id == event_id))
    if pl is not None:
        return pl
    pl = PriceList(event_id=event_id)
    pl.items.append(
        PriceListItem(
            label=settings.DEFAULT_PHOTO_LABEL,
            price_type="base",
            price_cents=settings.DEFAULT_PHOTO_PRICE_CENTS,
            is_digital=True,
            sort_order=0,
        )
    )
    db.add(pl)
    db.flush()
    log.info(f"[events] default price list created for event={event_id}")
    return pl


def serialize_price_list(pl: PriceList) -> dict:
    return {
        "id": pl.id,
        "event_id": pl.event_id,
        "items": [
            {
                "id": it.id,
                "label": it.label,
                "price_type": it.price_type,
                "price_cents": it.price_cents,
                "is_digital": it.is_digital,
                "sort_order": it.sort_order,
            }
            for it in pl.items
        ],
    }


def replace_price_list(
    db: Session, event_id: str, items: List[Dict[str, Any]], actor: Optional[str] = None
) -> PriceList:
    get_event(db, event_id)
    if not items:
        raise ValidationFailed("La lista de precios debe tener al menos un ítem")
    types = [it["price_type"] for it in items]
    if len(set(types)) != len(types):
        raise ValidationFailed("Tipos de precio duplicados")
    if any(int(it["price_cents"]) < 0 for it in items):
        raise ValidationFailed("Los precios no pueden ser negativos")

    pl = db.scalar(select(PriceList).where(PriceList.event_id == event_id))
    if pl is None:
        pl = PriceList(event_id=event_id)
        db.add(pl)
    pl.items.clear()
    db.flush()
    for idx, it in enumerate(items):
        pl.items.append(
            PriceListItem(
                label=it["label"],
                price_type=it["price_type"],
                price_cents=int(it["price_cents"]),
                is_digital=bool(it.get("is_digital", True)),
                sort_order=it.get("sort_order", idx),
            )
        )
    audit.log_action(db, "prices.replace", "event", event_id, actor=actor, details={"items": len(items)})
    db.commit()
    return pl
