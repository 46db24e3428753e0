# backend/app/services/photos.py
"""
Photo (asset) upload and bulk management.

Upload flow per request:
  1. per-file checks: content type, size cap, Pillow verification
  2. duplicates against the batch and against checksums already in the event
  3. watermark previews in the bounded pool (services.images.process_batch)
  4. store original (private bucket) + preview (public-ish bucket), insert rows
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import Event, Folder, OrderItem, Photo, PhotoSubject
from backend.app.services import images
from backend.app.services.signed_url_cache import url_cache
from backend.app.services.storage import BaseStorage, get_storage
from backend.app.telemetry import telemetry
from backend.app.utils.security import is_allowed_content_type, sanitize_filename

log = logging.getLogger(__name__)

MAX_BULK_MOVE = 100
MAX_BULK_DELETE = 50
MAX_SIGNED_URL_BATCH = 100


@dataclass
class IncomingFile:
    filename: str
    content_type: Optional[str]
    data: bytes


def serialize(photo: Photo, preview_url: Optional[str] = None) -> dict:
    return {
        "id": photo.id,
        "event_id": photo.event_id,
        "folder_id": photo.folder_id,
        "original_filename": photo.original_filename,
        "storage_path": photo.storage_path,
        "preview_path": photo.preview_path,
        "preview_url": preview_url,
        "width": photo.width,
        "height": photo.height,
        "file_size": photo.file_size,
        "mime_type": photo.mime_type,
        "approved": photo.approved,
        "processing_status": photo.processing_status,
        "created_at": photo.created_at,
    }


def _storage_paths(event_id: str, filename: str) -> Dict[str, str]:
    uid = uuid.uuid4().hex
    return {
        "original": f"events/{event_id}/originals/{uid}-{sanitize_filename(filename)}",
        "preview": f"events/{event_id}/previews/{uid}.webp",
    }


# --- upload ------------------------------------------------------------------
def upload_photos(
    db: Session,
    event_id: str,
    files: Sequence[IncomingFile],
    folder_id: Optional[str] = None,
    storage: Optional[BaseStorage] = None,
) -> dict:
    storage = storage or get_storage()
    telemetry.increment("uploads_total")

    event = db.get(Event, event_id)
    if event is None:
        raise NotFound("Evento no encontrado")
    if folder_id:
        folder = db.get(Folder, folder_id)
        if folder is None:
            raise NotFound("Carpeta no encontrada")
        if folder.event_id != event_id:
            raise ValidationFailed("La carpeta pertenece a otro evento")

    if not files:
        raise ValidationFailed("No se recibieron archivos")
    if len(files) > settings.MAX_UPLOAD_FILES:
        raise ValidationFailed(f"Máximo {settings.MAX_UPLOAD_FILES} archivos por subida")

    errors: List[dict] = []
    duplicates: List[dict] = []
    accepted: List[images.BatchItem] = []

    existing = set(
        db.scalars(select(Photo.checksum).where(Photo.event_id == event_id, Photo.checksum.is_not(None)))
    )

    for f in files:
        name = f.filename or "sin-nombre"
        if not is_allowed_content_type(f.content_type):
            errors.append({"filename": name, "error": "Tipo de archivo no permitido (solo JPG, PNG o WebP)"})
            continue
        if len(f.data) > settings.MAX_FILE_BYTES:
            limit_mb = settings.MAX_FILE_BYTES // (1024 * 1024)
            errors.append({"filename": name, "error": f"El archivo supera el máximo de {limit_mb} MB"})
            continue
        if not images.validate_image(f.data):
            errors.append({"filename": name, "error": "El archivo no es una imagen válida"})
            continue
        digest = images.sha256_hex(f.data)
        if digest in existing:
            duplicates.append({"filename": name, "duplicate_of": "existing", "hash": digest[:8]})
            continue
        accepted.append(images.BatchItem(data=f.data, original_name=name, content_type=f.content_type))

    if not accepted:
        telemetry.increment("uploads_failed")
        raise ValidationFailed(
            "No se encontraron imágenes válidas para procesar",
            details={"errors": errors, "duplicates": duplicates},
        )

    outcome = images.process_batch(
        accepted, watermark_text=f"© {event.name} - PREVIEW", concurrency=settings.UPLOAD_CONCURRENCY
    )
    errors.extend({"filename": e["original_name"], "error": e["error"]} for e in outcome.errors)
    duplicates.extend(
        {"filename": d["original_name"], "duplicate_of": d["duplicate_of"], "hash": d["hash"][:8]}
        for d in outcome.duplicates
    )

    uploaded: List[dict] = []
    total_preview_kb = 0.0
    for res in outcome.results:
        paths = _storage_paths(event_id, res.original_name)
        try:
            storage.upload(settings.STORAGE_BUCKET_ORIGINALS, paths["original"], res.original, res.content_type)
            storage.upload(settings.STORAGE_BUCKET_PREVIEWS, paths["preview"], res.preview.data, "image/webp")
        except Exception as e:
            log.warning(f"[photos] storage upload failed for {res.original_name}: {e}")
            errors.append({"filename": res.original_name, "error": "Error guardando el archivo"})
            continue

        width, height = images.image_dimensions(res.original)
        photo = Photo(
            event_id=event_id,
            folder_id=folder_id,
            original_filename=res.original_name,
            storage_path=paths["original"],
            preview_path=paths["preview"],
            width=width,
            height=height,
            file_size=len(res.original),
            mime_type=res.content_type,
            checksum=res.checksum,
            approved=False,
            processing_status="completed",
        )
        db.add(photo)
        db.flush()
        total_preview_kb += res.preview.size_kb
        uploaded.append(
            {
                "id": photo.id,
                "filename": res.original_name,
                "preview_path": photo.preview_path,
                "width": photo.width,
                "height": photo.height,
                "preview_width": res.preview.width,
                "preview_height": res.preview.height,
                "size_kb": res.preview.size_kb,
                "quality": res.preview.quality,
            }
        )

    db.commit()

    if not uploaded:
        telemetry.increment("uploads_failed")
        raise ValidationFailed(
            "No se pudo procesar ninguna imagen", details={"errors": errors, "duplicates": duplicates}
        )

    stats = {
        "total": len(files),
        "processed": len(uploaded),
        "errors": len(errors),
        "duplicates": len(duplicates),
        "preview_kb_total": round(total_preview_kb, 1),
    }
    telemetry.log_json("photos_uploaded", event_id=event_id, **stats)
    return {
        "uploaded": uploaded,
        "errors": errors,
        "duplicates": duplicates,
        "stats": stats,
        "message": f"{len(uploaded)} foto(s) subida(s) correctamente",
    }


# --- queries -----------------------------------------------------------------
def list_photos(
    db: Session,
    event_id: Optional[str] = None,
    folder_id: Optional[str] = None,
    approved: Optional[bool] = None,
    subject_id: Optional[str] = None,
    root_only: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    if limit < 1 or limit > 100:
        raise ValidationFailed("limit debe estar entre 1 y 100")
    stmt = select(Photo)
    if event_id:
        stmt = stmt.where(Photo.event_id == event_id)
    if folder_id:
        stmt = stmt.where(Photo.folder_id == folder_id)
    elif root_only:
        stmt = stmt.where(Photo.folder_id.is_(None))
    if approved is not None:
        stmt = stmt.where(Photo.approved.is_(approved))
    if subject_id:
        stmt = stmt.join(PhotoSubject, PhotoSubject.photo_id == Photo.id).where(
            PhotoSubject.subject_id == subject_id
        )
    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = db.scalars(stmt.order_by(Photo.created_at.desc(), Photo.id).limit(limit).offset(offset))
    return {
        "photos": [serialize(p) for p in rows],
        "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total},
    }


def _load_many(db: Session, photo_ids: Sequence[str]) -> List[Photo]:
    ids = list(dict.fromkeys(photo_ids))
    photos = list(db.scalars(select(Photo).where(Photo.id.in_(ids))))
    if len(photos) != len(ids):
        raise NotFound("Una o más fotos no existen")
    return photos


# --- bulk operations ---------------------------------------------------------
def move_photos(db: Session, photo_ids: Sequence[str], folder_id: Optional[str]) -> int:
    if not photo_ids:
        raise ValidationFailed("Debe indicar al menos una foto")
    if len(photo_ids) > MAX_BULK_MOVE:
        raise ValidationFailed(f"Máximo {MAX_BULK_MOVE} fotos por operación")
    photos = _load_many(db, photo_ids)
    event_ids = {p.event_id for p in photos}
    if folder_id is not None:
        folder = db.get(Folder, folder_id)
        if folder is None:
            raise NotFound("Carpeta destino no encontrada")
        if event_ids != {folder.event_id}:
            raise ValidationFailed("Las fotos y la carpeta destino deben pertenecer al mismo evento")
    for p in photos:
        p.folder_id = folder_id
    db.commit()
    return len(photos)


def set_approved(db: Session, photo_ids: Sequence[str], approved: bool = True) -> int:
    if not photo_ids:
        raise ValidationFailed("Debe indicar al menos una foto")
    if len(photo_ids) > MAX_BULK_MOVE:
        raise ValidationFailed(f"Máximo {MAX_BULK_MOVE} fotos por operación")
    ids = list(dict.fromkeys(photo_ids))
    res = db.execute(update(Photo).where(Photo.id.in_(ids)).values(approved=approved))
    db.commit()
    return res.rowcount or 0


def delete_photos(db: Session, photo_ids: Sequence[str], storage: Optional[BaseStorage] = None) -> dict:
    if not photo_ids:
        raise ValidationFailed("Debe indicar al menos una foto")
    if len(photo_ids) > MAX_BULK_DELETE:
        raise ValidationFailed(f"Máximo {MAX_BULK_DELETE} fotos por operación")
    storage = storage or get_storage()
    photos = list(db.scalars(select(Photo).where(Photo.id.in_(list(photo_ids)))))
    if not photos:
        raise NotFound("No se encontraron fotos")

    originals = [p.storage_path for p in photos]
    previews = [p.preview_path for p in photos if p.preview_path]
    ids = [p.id for p in photos]
    purchased = set(db.scalars(select(OrderItem.photo_id).where(OrderItem.photo_id.in_(ids)).distinct()))
    if purchased:
        raise Conflict(
            "No se pueden eliminar fotos incluidas en pedidos", details={"photo_ids": sorted(purchased)}
        )

    db.execute(delete(PhotoSubject).where(PhotoSubject.photo_id.in_(ids)))
    for p in photos:
        db.delete(p)
    db.commit()

    storage_errors = 0
    for bucket, paths in (
        (settings.STORAGE_BUCKET_ORIGINALS, originals),
        (settings.STORAGE_BUCKET_PREVIEWS, previews),
    ):
        try:
            storage.remove(bucket, paths)
        except Exception as e:
            storage_errors += 1
            log.warning(f"[photos] storage cleanup failed for {len(paths)} objects in {bucket}: {e}")
    for pid in ids:
        url_cache.remove(pid)
    return {"deleted": len(ids), "storage_errors": storage_errors}


def signed_urls(
    db: Session,
    photo_ids: Sequence[str],
    storage: Optional[BaseStorage] = None,
    originals: bool = False,
) -> Dict[str, str]:
    """Signed preview URLs keyed by photo id; previews go through the URL cache."""
    if len(photo_ids) > MAX_SIGNED_URL_BATCH:
        raise ValidationFailed(f"Máximo {MAX_SIGNED_URL_BATCH} fotos por solicitud")
    storage = storage or get_storage()
    ttl = settings.SIGNED_URL_TTL_SECONDS

    if originals:
        photos = list(db.scalars(select(Photo).where(Photo.id.in_(list(photo_ids)))))
        return {
            p.id: storage.create_signed_url(settings.STORAGE_BUCKET_ORIGINALS, p.storage_path, ttl)
            for p in photos
        }

    def _fetch(missing: List[str]) -> Dict[str, str]:
        rows = db.execute(select(Photo.id, Photo.preview_path).where(Photo.id.in_(missing))).all()
        by_path = {path: pid for pid, path in rows if path}
        signed = storage.create_signed_urls(settings.STORAGE_BUCKET_PREVIEWS, list(by_path), ttl)
        return {by_path[path]: url for path, url in signed.items() if path in by_path}

    return url_cache.preload(photo_ids, _fetch)


def event_photo_stats(db: Session, event_id: str) -> dict:
    total = db.scalar(select(func.count(Photo.id)).where(Photo.event_id == event_id)) or 0
    approved = (
        db.scalar(select(func.count(Photo.id)).where(Photo.event_id == event_id, Photo.approved.is_(True))) or 0
    )
    tagged = (
        db.scalar(
            select(func.count(func.distinct(PhotoSubject.photo_id)))
            .join(Photo, Photo.id == PhotoSubject.photo_id)
            .where(Photo.event_id == event_id)
        )
        or 0
    )
    size = db.scalar(select(func.coalesce(func.sum(Photo.file_size), 0)).where(Photo.event_id == event_id)) or 0
    return {
        "total": total,
        "approved": approved,
        "pending": total - approved,
        "tagged": tagged,
        "untagged": total - tagged,
        "total_bytes": int(size),
    }
