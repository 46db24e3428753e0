# backend/app/services/folders.py
"""
Hierarchical folders inside an event.

``path`` is the slash-joined chain of names from the event root (``/Nivel
Inicial/Sala 3``) and ``depth`` counts ancestors (root folders are 0). Both
are denormalised for listing speed, so every move rewrites them for the
whole moved subtree.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import Event, Folder, Photo

log = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_PARENT_DEPTH = 10  # parent depth >= this cannot take children
MAX_MOVE_TARGET_DEPTH = 9
MAX_LIST_LIMIT = 50

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f]')
_WHITESPACE = re.compile(r"\s+")

# Marker for "argument not given" where None is a meaningful value (event root)
UNSET = object()


def sanitize_folder_name(name: Optional[str]) -> str:
    name = _UNSAFE_CHARS.sub("", (name or "").strip())
    name = _WHITESPACE.sub(" ", name).strip()
    return name[:MAX_NAME_LENGTH]


def _child_path(parent: Optional[Folder], name: str) -> str:
    return f"{parent.path}/{name}" if parent else f"/{name}"


def _get(db: Session, folder_id: str) -> Folder:
    folder = db.get(Folder, folder_id)
    if folder is None:
        raise NotFound("Carpeta no encontrada")
    return folder


def _sibling_exists(
    db: Session, event_id: str, parent_id: Optional[str], name: str, exclude_id: Optional[str] = None
) -> bool:
    stmt = select(Folder.id).where(Folder.event_id == event_id, Folder.name == name)
    stmt = stmt.where(Folder.parent_id.is_(None) if parent_id is None else Folder.parent_id == parent_id)
    if exclude_id:
        stmt = stmt.where(Folder.id != exclude_id)
    return db.scalar(stmt.limit(1)) is not None


def _counts(db: Session, folder_ids: List[str]) -> Dict[str, Dict[str, int]]:
    if not folder_ids:
        return {}
    photos = dict(
        db.execute(
            select(Photo.folder_id, func.count(Photo.id))
            .where(Photo.folder_id.in_(folder_ids))
            .group_by(Photo.folder_id)
        ).all()
    )
    children = dict(
        db.execute(
            select(Folder.parent_id, func.count(Folder.id))
            .where(Folder.parent_id.in_(folder_ids))
            .group_by(Folder.parent_id)
        ).all()
    )
    return {fid: {"photo_count": photos.get(fid, 0), "child_folder_count": children.get(fid, 0)} for fid in folder_ids}


def serialize(folder: Folder, counts: Optional[Dict[str, int]] = None) -> dict:
    counts = counts or {}
    child_count = counts.get("child_folder_count", 0)
    return {
        "id": folder.id,
        "event_id": folder.event_id,
        "parent_id": folder.parent_id,
        "name": folder.name,
        "path": folder.path,
        "depth": folder.depth,
        "sort_order": folder.sort_order,
        "description": folder.description,
        "metadata": folder.meta or {},
        "photo_count": counts.get("photo_count", 0),
        "child_folder_count": child_count,
        "has_children": child_count > 0,
        "created_at": folder.created_at,
        "updated_at": folder.updated_at,
    }


# --- queries -----------------------------------------------------------------
def list_folders(
    db: Session,
    event_id: Optional[str] = None,
    parent_id=UNSET,
    limit: int = MAX_LIST_LIMIT,
    offset: int = 0,
) -> List[dict]:
    """
    ``parent_id`` left unset lists every folder; ``None`` lists event-root
    folders only.
    """
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise ValidationFailed(f"limit debe estar entre 1 y {MAX_LIST_LIMIT}")
    if offset < 0:
        raise ValidationFailed("offset no puede ser negativo")

    stmt = select(Folder)
    if event_id:
        stmt = stmt.where(Folder.event_id == event_id)
    if parent_id is not UNSET:
        stmt = stmt.where(Folder.parent_id.is_(None) if parent_id is None else Folder.parent_id == parent_id)
    stmt = stmt.order_by(Folder.sort_order, Folder.name).limit(limit).offset(offset)

    folders = list(db.scalars(stmt))
    counts = _counts(db, [f.id for f in folders])
    return [serialize(f, counts.get(f.id)) for f in folders]


def get_folder(db: Session, folder_id: str) -> dict:
    folder = _get(db, folder_id)
    return serialize(folder, _counts(db, [folder.id]).get(folder.id))


def get_tree(db: Session, event_id: str) -> List[dict]:
    folders = list(
        db.scalars(
            select(Folder)
            .where(Folder.event_id == event_id)
            .order_by(Folder.depth, Folder.sort_order, Folder.name)
        )
    )
    counts = _counts(db, [f.id for f in folders])
    return [serialize(f, counts.get(f.id)) for f in folders]


def get_breadcrumb(db: Session, folder_id: str) -> List[dict]:
    crumbs: List[dict] = []
    current: Optional[Folder] = _get(db, folder_id)
    guard = 0
    while current is not None and guard < 20:
        crumbs.append({"id": current.id, "name": current.name, "depth": current.depth})
        current = db.get(Folder, current.parent_id) if current.parent_id else None
        guard += 1
    crumbs.reverse()
    return crumbs


def _descendant_ids(db: Session, folder: Folder) -> List[str]:
    out: List[str] = []
    frontier = [folder.id]
    while frontier:
        children = list(db.scalars(select(Folder.id).where(Folder.parent_id.in_(frontier))))
        out.extend(children)
        frontier = children
    return out


def descendant_ids(db: Session, folder_id: str) -> List[str]:
    return _descendant_ids(db, _get(db, folder_id))


# --- mutations ---------------------------------------------------------------
def create_folder(
    db: Session,
    event_id: str,
    name: str,
    parent_id: Optional[str] = None,
    description: Optional[str] = None,
    sort_order: int = 0,
    metadata: Optional[dict] = None,
) -> dict:
    clean = sanitize_folder_name(name)
    if not clean:
        raise ValidationFailed("El nombre de la carpeta es obligatorio")

    if db.get(Event, event_id) is None:
        raise NotFound("Evento no encontrado")

    parent: Optional[Folder] = None
    if parent_id:
        parent = db.get(Folder, parent_id)
        if parent is None:
            raise NotFound("Carpeta padre no encontrada")
        if parent.event_id != event_id:
            raise ValidationFailed("La carpeta padre pertenece a otro evento")
        if parent.depth >= MAX_PARENT_DEPTH:
            raise ValidationFailed("Se alcanzó la profundidad máxima de carpetas")

    if _sibling_exists(db, event_id, parent_id, clean):
        raise Conflict("Ya existe una carpeta con ese nombre en esta ubicación")

    folder = Folder(
        event_id=event_id,
        parent_id=parent.id if parent else None,
        name=clean,
        path=_child_path(parent, clean),
        depth=parent.depth + 1 if parent else 0,
        sort_order=sort_order,
        description=description,
        meta=metadata or {},
    )
    db.add(folder)
    db.commit()
    log.info(f"[folders] created {folder.id} depth={folder.depth} event={event_id}")
    return serialize(folder)


def _rewrite_subtree(db: Session, folder: Folder) -> None:
    """Recompute path/depth of every descendant from ``folder`` downwards."""
    frontier = [folder]
    while frontier:
        nxt: List[Folder] = []
        for parent in frontier:
            for child in db.scalars(select(Folder).where(Folder.parent_id == parent.id)):
                child.path = _child_path(parent, child.name)
                child.depth = parent.depth + 1
                nxt.append(child)
        frontier = nxt


def update_folder(
    db: Session,
    folder_id: str,
    name: Optional[str] = None,
    parent_id=UNSET,
    description=UNSET,
    sort_order: Optional[int] = None,
    metadata: Optional[dict] = None,
) -> dict:
    folder = _get(db, folder_id)
    new_name = folder.name
    new_parent_id = folder.parent_id
    new_parent: Optional[Folder] = db.get(Folder, folder.parent_id) if folder.parent_id else None

    if name is not None:
        new_name = sanitize_folder_name(name)
        if not new_name:
            raise ValidationFailed("El nombre de la carpeta es obligatorio")

    if parent_id is not UNSET and parent_id != folder.parent_id:
        if parent_id is None:
            new_parent = None
        else:
            if parent_id == folder.id:
                raise ValidationFailed("Una carpeta no puede moverse dentro de sí misma")
            new_parent = db.get(Folder, parent_id)
            if new_parent is None:
                raise NotFound("Carpeta destino no encontrada")
            if new_parent.event_id != folder.event_id:
                raise ValidationFailed("No se puede mover a una carpeta de otro evento")
            if parent_id in _descendant_ids(db, folder):
                raise ValidationFailed("No se puede mover una carpeta dentro de una subcarpeta propia")
            if new_parent.depth >= MAX_MOVE_TARGET_DEPTH:
                raise ValidationFailed("Se excedería la profundidad máxima de carpetas")
        new_parent_id = parent_id

    structural = new_name != folder.name or new_parent_id != folder.parent_id
    if structural and _sibling_exists(db, folder.event_id, new_parent_id, new_name, exclude_id=folder.id):
        raise Conflict("Ya existe una carpeta con ese nombre en esta ubicación")

    folder.name = new_name
    folder.parent_id = new_parent_id
    if description is not UNSET:
        folder.description = description
    if sort_order is not None:
        folder.sort_order = sort_order
    if metadata is not None:
        folder.meta = metadata

    if structural:
        folder.path = _child_path(new_parent, new_name)
        folder.depth = new_parent.depth + 1 if new_parent else 0
        db.flush()
        _rewrite_subtree(db, folder)

    db.commit()
    return get_folder(db, folder.id)


def delete_folder(db: Session, folder_id: str, move_contents_to=UNSET) -> dict:
    """
    Delete a folder. When it has subfolders or photos the caller must say
    where they go: another folder of the same event, or ``None`` for the event
    root. Leaving ``move_contents_to`` unset on a non-empty folder is a 409.
    """
    folder = _get(db, folder_id)
    child_folders = list(db.scalars(select(Folder).where(Folder.parent_id == folder.id)))
    photo_count = db.scalar(select(func.count(Photo.id)).where(Photo.folder_id == folder.id)) or 0
    has_contents = bool(child_folders) or photo_count > 0

    if has_contents and move_contents_to is UNSET:
        raise Conflict("La carpeta contiene elementos; indique dónde moverlos")

    target: Optional[Folder] = None
    if move_contents_to is not UNSET and move_contents_to is not None:
        if move_contents_to == folder.id:
            raise ValidationFailed("No se puede mover el contenido a la misma carpeta")
        target = db.get(Folder, move_contents_to)
        if target is None:
            raise NotFound("Carpeta destino no encontrada")
        if target.event_id != folder.event_id:
            raise ValidationFailed("No se puede mover el contenido a otro evento")
        if target.id in _descendant_ids(db, folder):
            raise ValidationFailed("No se puede mover el contenido a una subcarpeta propia")

    if has_contents:
        target_id = target.id if target else None
        for child in child_folders:
            if _sibling_exists(db, folder.event_id, target_id, child.name, exclude_id=child.id):
                raise Conflict(f"Ya existe una carpeta '{child.name}' en el destino")
        for child in child_folders:
            child.parent_id = target_id
            child.path = _child_path(target, child.name)
            child.depth = target.depth + 1 if target else 0
        db.flush()
        for child in child_folders:
            _rewrite_subtree(db, child)
        db.execute(update(Photo).where(Photo.folder_id == folder.id).values(folder_id=target_id))

    db.delete(folder)
    db.commit()
    log.info(
        f"[folders] deleted {folder_id} moved_contents={has_contents} "
        f"target={'root' if has_contents and target is None else (target.id if target else 'none')}"
    )
    return {
        "deleted": folder_id,
        "moved_folders": len(child_folders),
        "moved_photos": photo_count,
    }
