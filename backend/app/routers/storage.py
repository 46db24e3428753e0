# backend/app/routers/storage.py
from __future__ import annotations

import logging
import mimetypes

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response

from backend.app.services.storage import LocalStorage, StorageError, get_storage, verify_local_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def _forbidden() -> JSONResponse:
    return JSONResponse({"ok": False, "error": "URL inválida o expirada"}, status_code=403)


@router.get("/storage/{bucket}/{path:path}")
def serve_signed(bucket: str, path: str, expires: int = 0, signature: str = ""):
    """Serve a file from LocalStorage behind an HMAC-signed, expiring URL."""
    storage = get_storage()
    if not isinstance(storage, LocalStorage):
        return JSONResponse({"ok": False, "error": "No encontrado"}, status_code=404)
    if not verify_local_signature(bucket, path, expires, signature):
        logger.info(f"[storage] rejected signature for {bucket}/{path}")
        return _forbidden()
    try:
        data = storage.download(bucket, path)
    except StorageError:
        return JSONResponse({"ok": False, "error": "No encontrado"}, status_code=404)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type, headers={"Cache-Control": "private, max-age=300"})
