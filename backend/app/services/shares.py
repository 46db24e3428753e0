# backend/app/services/shares.py
"""
Public share links (event, folder or hand-picked photos).

Access checks run in a fixed order: unknown/inactive -> expired -> view
limit -> password. A request that only lacks the password gets a
``password_required`` answer (no photos, no view counted).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.errors import Forbidden, Gone, NotFound, Unauthorized, ValidationFailed
from backend.app.models import Event, Folder, Photo, ShareToken, as_utc, utcnow
from backend.app.services import audit, folders
from backend.app.services import photos as photo_service
from backend.app.services.storage import BaseStorage, get_storage
from backend.app.utils.security import generate_secure_token, hash_share_password, mask_token, safe_compare

log = logging.getLogger(__name__)

SHARE_TYPES = ("event", "folder", "photos")
SHARE_TOKEN_LENGTH = 32


@dataclass
class ShareAccess:
    password_required: bool = False
    share: Optional[ShareToken] = None
    event: Optional[Event] = None
    folder: Optional[Folder] = None
    photos: List[dict] = field(default_factory=list)


def serialize(share: ShareToken) -> dict:
    expires_at = as_utc(share.expires_at)
    return {
        "id": share.id,
        "token": share.token,
        "share_url": f"{settings.APP_BASE_URL.rstrip('/')}/s/{share.token}",
        "event_id": share.event_id,
        "folder_id": share.folder_id,
        "share_type": share.share_type,
        "photo_ids": share.photo_ids,
        "include_descendants": share.include_descendants,
        "title": share.title,
        "description": share.description,
        "has_password": bool(share.password_hash),
        "expires_at": expires_at.isoformat() if expires_at else None,
        "max_views": share.max_views,
        "view_count": share.view_count,
        "allow_download": share.allow_download,
        "is_active": share.is_active,
        "created_at": share.created_at,
    }


def create_share(
    db: Session,
    event_id: str,
    share_type: str,
    folder_id: Optional[str] = None,
    photo_ids: Optional[Sequence[str]] = None,
    include_descendants: bool = False,
    title: Optional[str] = None,
    description: Optional[str] = None,
    password: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    max_views: Optional[int] = None,
    allow_download: bool = False,
    actor: Optional[str] = None,
) -> ShareToken:
    if share_type not in SHARE_TYPES:
        raise ValidationFailed("Tipo de enlace inválido")
    if db.get(Event, event_id) is None:
        raise NotFound("Evento no encontrado")
    if max_views is not None and max_views < 1:
        raise ValidationFailed("max_views debe ser al menos 1")
    if expires_at is not None and as_utc(expires_at) <= utcnow():
        raise ValidationFailed("La fecha de expiración debe ser futura")

    ids: Optional[List[str]] = None
    if share_type == "folder":
        if not folder_id:
            raise ValidationFailed("Debe indicar la carpeta a compartir")
        folder = db.get(Folder, folder_id)
        if folder is None or folder.event_id != event_id:
            raise NotFound("Carpeta no encontrada en este evento")
    elif share_type == "photos":
        ids = list(dict.fromkeys(photo_ids or []))
        if not ids:
            raise ValidationFailed("Debe seleccionar al menos una foto")
        found = set(db.scalars(select(Photo.id).where(Photo.id.in_(ids), Photo.event_id == event_id)))
        if len(found) != len(ids):
            raise ValidationFailed("Todas las fotos deben pertenecer al evento")
        folder_id = None
    else:
        folder_id = None

    share = ShareToken(
        token=generate_secure_token(SHARE_TOKEN_LENGTH),
        event_id=event_id,
        folder_id=folder_id,
        share_type=share_type,
        photo_ids=ids,
        include_descendants=include_descendants if share_type == "folder" else False,
        title=title,
        description=description,
        password_hash=hash_share_password(password) if password else None,
        expires_at=expires_at,
        max_views=max_views,
        allow_download=allow_download,
    )
    db.add(share)
    db.flush()
    audit.log_action(
        db,
        "share.create",
        "share_token",
        share.id,
        actor=actor,
        details={"type": share_type, "token": mask_token(share.token), "password": bool(password)},
    )
    db.commit()
    return share


def list_shares(db: Session, event_id: str) -> List[ShareToken]:
    return list(
        db.scalars(select(ShareToken).where(ShareToken.event_id == event_id).order_by(ShareToken.created_at.desc()))
    )


def deactivate_share(db: Session, share_id: str, actor: Optional[str] = None) -> ShareToken:
    share = db.get(ShareToken, share_id)
    if share is None:
        raise NotFound("Enlace no encontrado")
    share.is_active = False
    audit.log_action(db, "share.deactivate", "share_token", share.id, actor=actor)
    db.commit()
    return share


def _scope_photos(db: Session, share: ShareToken) -> List[Photo]:
    stmt = select(Photo).where(Photo.event_id == share.event_id, Photo.approved.is_(True))
    if share.share_type == "folder":
        folder_ids = [share.folder_id]
        if share.include_descendants:
            folder_ids += folders.descendant_ids(db, share.folder_id)
        stmt = stmt.where(Photo.folder_id.in_(folder_ids))
    elif share.share_type == "photos":
        stmt = stmt.where(Photo.id.in_(share.photo_ids or []))
    return list(db.scalars(stmt.order_by(Photo.created_at, Photo.id)))


def access_share(
    db: Session,
    token: str,
    password: Optional[str] = None,
    storage: Optional[BaseStorage] = None,
) -> ShareAccess:
    share = db.scalar(select(ShareToken).where(ShareToken.token == token))
    if share is None or not share.is_active:
        raise NotFound("Enlace no encontrado o inactivo")

    expires_at = as_utc(share.expires_at)
    if expires_at is not None and expires_at <= utcnow():
        raise Gone("El enlace ha expirado")

    if share.max_views is not None and share.view_count >= share.max_views:
        raise Forbidden("El enlace alcanzó el máximo de visualizaciones")

    if share.password_hash:
        if not password:
            return ShareAccess(password_required=True, share=share)
        if not safe_compare(hash_share_password(password), share.password_hash):
            log.info(f"[shares] wrong password token={mask_token(token)}")
            raise Unauthorized("Contraseña incorrecta")

    share.view_count = (share.view_count or 0) + 1
    db.commit()

    event = db.get(Event, share.event_id)
    folder = db.get(Folder, share.folder_id) if share.folder_id else None
    scoped = _scope_photos(db, share)

    storage = storage or get_storage()
    previews = photo_service.signed_urls(db, [p.id for p in scoped], storage=storage) if scoped else {}
    originals = {}
    if share.allow_download and scoped:
        originals = photo_service.signed_urls(db, [p.id for p in scoped], storage=storage, originals=True)

    photos = []
    for p in scoped:
        row = {
            "id": p.id,
            "filename": p.original_filename,
            "width": p.width,
            "height": p.height,
            "preview_url": previews.get(p.id),
        }
        if share.allow_download:
            row["download_url"] = originals.get(p.id)
        photos.append(row)

    return ShareAccess(share=share, event=event, folder=folder, photos=photos)
