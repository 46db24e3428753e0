# backend/app/routers/photos.py
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from backend.app.config import settings
from backend.app.db import get_db
from backend.app.dependencies.auth import AdminIdentity, require_admin
from backend.app.errors import ValidationFailed
from backend.app.limiter import limiter
from backend.app.schema.admin_schema import (
    BulkAssetRequest,
    PhotoApprove,
    PhotoIds,
    PhotoMove,
    SignedUrlRequest,
    TagRequest,
)
from backend.app.services import photos, tagging
from backend.app.services.photos import IncomingFile

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/admin/photos/upload")
@limiter.limit(settings.RATE_LIMIT_UPLOAD)
async def upload(
    request: Request,
    event_id: str = Form(...),
    folder_id: Optional[str] = Form(None),
    files: List[UploadFile] = File(...),
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    if len(files) > settings.MAX_UPLOAD_FILES:
        raise ValidationFailed(f"Máximo {settings.MAX_UPLOAD_FILES} archivos por subida")
    # one byte past the cap is enough for the size check to reject the file
    incoming = [
        IncomingFile(
            filename=f.filename or "",
            content_type=f.content_type or "",
            data=await f.read(settings.MAX_FILE_BYTES + 1),
        )
        for f in files
    ]
    logger.info(f"[photos] upload event={event_id} files={len(incoming)}")
    result = await run_in_threadpool(photos.upload_photos, db, event_id, incoming, folder_id or None)
    return {"ok": True, **result}


@router.get("/api/admin/photos")
def list_photos(
    event_id: Optional[str] = None,
    folder_id: Optional[str] = None,
    approved: Optional[bool] = None,
    subject_id: Optional[str] = None,
    root_only: bool = False,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    result = photos.list_photos(
        db,
        event_id=event_id,
        folder_id=folder_id,
        approved=approved,
        subject_id=subject_id,
        root_only=root_only,
        limit=limit,
        offset=offset,
    )
    return {"ok": True, **result}


@router.post("/api/admin/photos/move")
def move_photos(body: PhotoMove, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    moved = photos.move_photos(db, body.photo_ids, body.folder_id)
    return {"ok": True, "moved": moved}


@router.post("/api/admin/photos/approve")
def approve_photos(body: PhotoApprove, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    updated = photos.set_approved(db, body.photo_ids, body.approved)
    return {"ok": True, "updated": updated, "approved": body.approved}


@router.delete("/api/admin/photos")
def delete_photos(body: PhotoIds, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    result = photos.delete_photos(db, body.photo_ids)
    return {"ok": True, **result}


@router.post("/api/admin/assets/bulk")
def bulk_assets(
    body: BulkAssetRequest, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    if body.action == "move":
        if "target_folder_id" not in body.model_fields_set:
            raise ValidationFailed("target_folder_id es obligatorio para mover")
        moved = photos.move_photos(db, body.asset_ids, body.target_folder_id)
        return {"ok": True, "action": "move", "moved": moved}
    result = photos.delete_photos(db, body.asset_ids)
    return {"ok": True, "action": "delete", **result}


@router.post("/api/admin/storage/batch-signed-urls")
def batch_signed_urls(
    body: SignedUrlRequest, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    urls = photos.signed_urls(db, body.photo_ids, originals=body.originals)
    missing = [pid for pid in body.photo_ids if pid not in urls]
    return {"ok": True, "urls": urls, "missing": missing}


# --- tagging ------------------------------------------------------------------
@router.post("/api/admin/tagging")
def tag(body: TagRequest, db: Session = Depends(get_db), admin: AdminIdentity = Depends(require_admin)):
    result = tagging.tag_photos(db, body.subject_id, body.photo_ids, actor=admin.email or admin.id)
    return {"ok": True, **result}


@router.delete("/api/admin/tagging")
def untag(body: TagRequest, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    removed = tagging.untag_photos(db, body.subject_id, body.photo_ids)
    return {"ok": True, "removed": removed}


@router.get("/api/admin/subjects/{subject_id}/photos")
def subject_photos(subject_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "photos": tagging.subject_photos(db, subject_id)}


@router.get("/api/admin/events/{event_id}/untagged")
def untagged(
    event_id: str, limit: int = 100, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    return {"ok": True, "photos": tagging.untagged_photos(db, event_id, limit=limit)}
