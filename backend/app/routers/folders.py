# backend/app/routers/folders.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.dependencies.auth import AdminIdentity, require_admin
from backend.app.schema.admin_schema import FolderCreate, FolderUpdate
from backend.app.services import folders
from backend.app.services.folders import UNSET

logger = logging.getLogger(__name__)

router = APIRouter()

# query value meaning "the event root" for parent_id / move_contents_to
ROOT = "root"


def _target(value: Optional[str]):
    if value is None:
        return UNSET
    return None if value in (ROOT, "") else value


@router.get("/api/admin/folders")
def list_folders(
    event_id: Optional[str] = None,
    parent_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    rows = folders.list_folders(db, event_id=event_id, parent_id=_target(parent_id), limit=limit, offset=offset)
    return {"ok": True, "folders": rows, "count": len(rows)}


@router.post("/api/admin/folders", status_code=201)
def create_folder(body: FolderCreate, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    folder = folders.create_folder(
        db,
        body.event_id,
        body.name,
        parent_id=body.parent_id,
        description=body.description,
        sort_order=body.sort_order,
        metadata=body.metadata,
    )
    return {"ok": True, "folder": folder}


@router.get("/api/admin/folders/{folder_id}")
def get_folder(folder_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "folder": folders.get_folder(db, folder_id)}


@router.get("/api/admin/folders/{folder_id}/breadcrumb")
def breadcrumb(folder_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "breadcrumb": folders.get_breadcrumb(db, folder_id)}


@router.patch("/api/admin/folders/{folder_id}")
def update_folder(
    folder_id: str,
    body: FolderUpdate,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    sent = body.model_fields_set
    folder = folders.update_folder(
        db,
        folder_id,
        name=body.name,
        parent_id=body.parent_id if "parent_id" in sent else UNSET,
        description=body.description if "description" in sent else UNSET,
        sort_order=body.sort_order,
        metadata=body.metadata,
    )
    return {"ok": True, "folder": folder}


@router.delete("/api/admin/folders/{folder_id}")
def delete_folder(
    folder_id: str,
    move_contents_to: Optional[str] = None,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    result = folders.delete_folder(db, folder_id, move_contents_to=_target(move_contents_to))
    logger.info(f"[folders] deleted {folder_id}: {result}")
    return {"ok": True, **result}
