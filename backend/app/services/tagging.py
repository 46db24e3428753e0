# backend/app/services/tagging.py
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sqlalchemy import delete, exists, select
from sqlalchemy.orm import Session

from backend.app.errors import NotFound, ValidationFailed
from backend.app.models import Photo, PhotoSubject, Subject
from backend.app.services import photos as photo_service

log = logging.getLogger(__name__)


def _subject(db: Session, subject_id: str) -> Subject:
    subject = db.get(Subject, subject_id)
    if subject is None:
        raise NotFound("Alumno no encontrado")
    return subject


def tag_photos(db: Session, subject_id: str, photo_ids: Sequence[str], actor: Optional[str] = None) -> dict:
    """Link photos to a subject. Already-tagged pairs are left alone."""
    if not photo_ids:
        raise ValidationFailed("Debe indicar al menos una foto")
    subject = _subject(db, subject_id)
    ids = list(dict.fromkeys(photo_ids))
    photos = list(db.scalars(select(Photo).where(Photo.id.in_(ids))))
    if len(photos) != len(ids):
        raise NotFound("Una o más fotos no existen")
    if any(p.event_id != subject.event_id for p in photos):
        raise ValidationFailed("Las fotos deben pertenecer al mismo evento que el alumno")

    already = set(
        db.scalars(
            select(PhotoSubject.photo_id).where(
                PhotoSubject.subject_id == subject_id, PhotoSubject.photo_id.in_(ids)
            )
        )
    )
    added = 0
    for pid in ids:
        if pid in already:
            continue
        db.add(PhotoSubject(photo_id=pid, subject_id=subject_id, tagged_by=actor))
        added += 1
    db.commit()
    log.info(f"[tagging] subject={subject_id} tagged={added} skipped={len(already)}")
    return {"tagged": added, "already_tagged": len(already)}


def untag_photos(db: Session, subject_id: str, photo_ids: Sequence[str]) -> int:
    _subject(db, subject_id)
    res = db.execute(
        delete(PhotoSubject).where(
            PhotoSubject.subject_id == subject_id, PhotoSubject.photo_id.in_(list(photo_ids))
        )
    )
    db.commit()
    return res.rowcount or 0


def subject_photo_ids(db: Session, subject_id: str, approved_only: bool = False) -> List[str]:
    stmt = (
        select(Photo.id)
        .join(PhotoSubject, PhotoSubject.photo_id == Photo.id)
        .where(PhotoSubject.subject_id == subject_id)
    )
    if approved_only:
        stmt = stmt.where(Photo.approved.is_(True))
    return list(db.scalars(stmt))


def subject_photos(db: Session, subject_id: str) -> List[dict]:
    _subject(db, subject_id)
    rows = db.scalars(
        select(Photo)
        .join(PhotoSubject, PhotoSubject.photo_id == Photo.id)
        .where(PhotoSubject.subject_id == subject_id)
        .order_by(Photo.created_at)
    )
    return [photo_service.serialize(p) for p in rows]


def untagged_photos(db: Session, event_id: str, limit: int = 100) -> List[dict]:
    tagged = exists().where(PhotoSubject.photo_id == Photo.id)
    rows = db.scalars(
        select(Photo).where(Photo.event_id == event_id, ~tagged).order_by(Photo.created_at).limit(limit)
    )
    return [photo_service.serialize(p) for p in rows]
