# backend/app/routers/events.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.dependencies.auth import AdminIdentity, require_admin
from backend.app.errors import NotFound
from backend.app.limiter import client_key
from backend.app.models import Subject
from backend.app.schema.admin_schema import (
    EventCreate,
    EventUpdate,
    PriceListIn,
    RotateTokenRequest,
    SubjectsCreate,
)
from backend.app.services import events, folders, shares
from backend.app.services import photos as photo_service
from backend.app.services.tokens import token_service

logger = logging.getLogger(__name__)

router = APIRouter()


def _actor(admin: AdminIdentity) -> str:
    return admin.email or admin.id


@router.get("/api/admin/events")
def list_events(
    status: str | None = None,
    with_stats: bool = False,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    return {"ok": True, "events": events.list_events(db, status=status, with_stats=with_stats)}


@router.post("/api/admin/events", status_code=201)
def create_event(
    body: EventCreate,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    event = events.create_event(
        db, body.name, school=body.school, event_date=body.date, status=body.status, actor=_actor(admin)
    )
    return {"ok": True, "event": events.serialize(event)}


@router.get("/api/admin/events/{event_id}")
def get_event(event_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    event = events.get_event(db, event_id)
    return {
        "ok": True,
        "event": events.serialize(event),
        "photo_stats": photo_service.event_photo_stats(db, event_id),
    }


@router.patch("/api/admin/events/{event_id}")
def update_event(
    event_id: str,
    body: EventUpdate,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    event = events.update_event(db, event_id, actor=_actor(admin), **body.model_dump(exclude_unset=True))
    return {"ok": True, "event": events.serialize(event)}


@router.delete("/api/admin/events/{event_id}")
def delete_event(event_id: str, db: Session = Depends(get_db), admin: AdminIdentity = Depends(require_admin)):
    events.delete_event(db, event_id, actor=_actor(admin))
    return {"ok": True, "deleted": event_id}


# --- subjects & tokens --------------------------------------------------------
@router.post("/api/admin/events/{event_id}/subjects", status_code=201)
def create_subjects(
    event_id: str,
    body: SubjectsCreate,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    created = [
        token_service.create_subject_with_token(
            db, event_id, s.name, grade=s.grade, expires_in_days=s.expires_in_days, actor=_actor(admin)
        )
        for s in body.subjects
    ]
    db.commit()
    return {"ok": True, "subjects": [events.serialize_subject(s) for s in created]}


@router.get("/api/admin/events/{event_id}/subjects")
def list_subjects(event_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "subjects": [events.serialize_subject(s) for s in events.list_subjects(db, event_id)]}


@router.post("/api/admin/subjects/{subject_id}/rotate-token")
def rotate_subject_token(
    subject_id: str,
    request: Request,
    body: RotateTokenRequest | None = None,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    subject = db.get(Subject, subject_id)
    if subject is None:
        raise NotFound("Alumno no encontrado")
    days = body.expires_in_days if body else None
    subject = token_service.rotate_subject_token(db, subject, expires_in_days=days, actor=_actor(admin))
    db.commit()
    logger.info(f"[events] token rotated for subject={subject_id} from {client_key(request)}")
    return {"ok": True, "subject": events.serialize_subject(subject)}


@router.get("/api/admin/tokens/expiring")
def tokens_expiring(
    days: int | None = None, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    return {"ok": True, "tokens": token_service.get_tokens_expiring_soon(db, days)}


@router.get("/api/admin/tokens/metrics")
def tokens_metrics(db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "metrics": token_service.get_token_metrics(db)}


# --- prices -------------------------------------------------------------------
@router.get("/api/admin/events/{event_id}/prices")
def get_prices(event_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    events.get_event(db, event_id)
    pl = events.ensure_price_list(db, event_id)
    db.commit()
    return {"ok": True, "price_list": events.serialize_price_list(pl)}


@router.put("/api/admin/events/{event_id}/prices")
def put_prices(
    event_id: str,
    body: PriceListIn,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    pl = events.replace_price_list(db, event_id, [i.model_dump() for i in body.items], actor=_actor(admin))
    return {"ok": True, "price_list": events.serialize_price_list(pl)}


# --- per-event views ------------------------------------------------------------
@router.get("/api/admin/events/{event_id}/folders/tree")
def folder_tree(event_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    events.get_event(db, event_id)
    return {"ok": True, "folders": folders.get_tree(db, event_id)}


@router.get("/api/admin/events/{event_id}/shares")
def event_shares(event_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    events.get_event(db, event_id)
    return {"ok": True, "shares": [shares.serialize(s) for s in shares.list_shares(db, event_id)]}
