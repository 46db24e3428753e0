# backend/app/services/storage.py
"""
Object storage for originals and watermarked previews.

Two backends share one interface:
  * SupabaseStorage - supabase-py Storage buckets (production)
  * LocalStorage    - files under LOCAL_STORAGE_DIR, HMAC-signed URLs served by
                      ``/storage/{bucket}/{path}`` (dev, tests)

Object keys look like ``events/<event_id>/originals/<uuid>-<name>`` and
``events/<event_id>/previews/<uuid>.webp``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote, urlencode

from backend.app.config import settings
from backend.app.errors import UpstreamError, ValidationFailed
from backend.app.utils.security import is_valid_storage_path

log = logging.getLogger(__name__)


class StorageError(UpstreamError):
    default_message = "Error de almacenamiento"


class BaseStorage:
    name = "base"

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def download(self, bucket: str, path: str) -> bytes:
        raise NotImplementedError

    def remove(self, bucket: str, paths: Iterable[str]) -> int:
        raise NotImplementedError

    def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        raise NotImplementedError

    def create_signed_urls(self, bucket: str, paths: List[str], expires_in: int) -> Dict[str, str]:
        """Batch variant; backends with a native batch call override this."""
        out: Dict[str, str] = {}
        for p in paths:
            out[p] = self.create_signed_url(bucket, p, expires_in)
        return out


def _check_path(path: str) -> None:
    if not is_valid_storage_path(path):
        raise ValidationFailed("Ruta de almacenamiento inválida")


# --- Local filesystem ---------------------------------------------------------
def sign_local_path(bucket: str, path: str, expires: int, secret: Optional[str] = None) -> str:
    key = (secret or settings.STORAGE_SIGNING_SECRET).encode("utf-8")
    msg = f"{bucket}/{path}:{expires}".encode("utf-8")
    return hmac.new(key, msg, hashlib.sha256).hexdigest()


def verify_local_signature(
    bucket: str, path: str, expires: int, signature: str, now: Optional[float] = None
) -> bool:
    now = time.time() if now is None else now
    if expires <= now:
        return False
    expected = sign_local_path(bucket, path, expires)
    return hmac.compare_digest(expected, signature or "")


class LocalStorage(BaseStorage):
    name = "local"

    def __init__(self, root: Optional[str] = None, base_url: str = ""):
        self.root = Path(root or settings.LOCAL_STORAGE_DIR)
        self.base_url = base_url.rstrip("/")

    def _file(self, bucket: str, path: str) -> Path:
        _check_path(path)
        return self.root / bucket / path

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        dest = self._file(bucket, path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return path

    def download(self, bucket: str, path: str) -> bytes:
        src = self._file(bucket, path)
        if not src.exists():
            raise StorageError("Archivo no encontrado en almacenamiento")
        return src.read_bytes()

    def exists(self, bucket: str, path: str) -> bool:
        return self._file(bucket, path).exists()

    def remove(self, bucket: str, paths: Iterable[str]) -> int:
        removed = 0
        for p in paths:
            f = self._file(bucket, p)
            if f.exists():
                f.unlink()
                removed += 1
        return removed

    def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        _check_path(path)
        expires = int(time.time()) + int(expires_in)
        qs = urlencode({"expires": expires, "signature": sign_local_path(bucket, path, expires)})
        return f"{self.base_url}/storage/{quote(bucket)}/{quote(path)}?{qs}"


# --- Supabase Storage ---------------------------------------------------------
class SupabaseStorage(BaseStorage):
    name = "supabase"

    def __init__(self, client=None):
        if client is None:
            from supabase import create_client

            client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
        self.client = client

    def _bucket(self, bucket: str):
        return self.client.storage.from_(bucket)

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        _check_path(path)
        try:
            self._bucket(bucket).upload(
                path=path,
                file=data,
                file_options={"content-type": content_type, "cache-control": "3600", "upsert": "false"},
            )
        except Exception as e:
            log.warning(f"[storage] upload failed bucket={bucket}: {e}")
            raise StorageError("Error subiendo archivo al almacenamiento") from e
        return path

    def download(self, bucket: str, path: str) -> bytes:
        _check_path(path)
        try:
            return self._bucket(bucket).download(path)
        except Exception as e:
            raise StorageError("Error descargando archivo") from e

    def remove(self, bucket: str, paths: Iterable[str]) -> int:
        paths = list(paths)
        if not paths:
            return 0
        try:
            res = self._bucket(bucket).remove(paths)
        except Exception as e:
            raise StorageError("Error eliminando archivos") from e
        return len(res) if isinstance(res, list) else len(paths)

    def create_signed_url(self, bucket: str, path: str, expires_in: int) -> str:
        _check_path(path)
        try:
            res = self._bucket(bucket).create_signed_url(path, int(expires_in))
        except Exception as e:
            raise StorageError("Error generando URL firmada") from e
        url = _signed_url_from(res)
        if not url:
            raise StorageError("Respuesta de almacenamiento sin URL firmada")
        return url

    def create_signed_urls(self, bucket: str, paths: List[str], expires_in: int) -> Dict[str, str]:
        if not paths:
            return {}
        for p in paths:
            _check_path(p)
        try:
            res = self._bucket(bucket).create_signed_urls(paths, int(expires_in))
        except Exception as e:
            raise StorageError("Error generando URLs firmadas") from e
        out: Dict[str, str] = {}
        for row in res or []:
            url = _signed_url_from(row)
            if url and row.get("path"):
                out[row["path"]] = url
        return out


def _signed_url_from(res) -> Optional[str]:
    # supabase-py has returned both spellings across releases
    if isinstance(res, dict):
        return res.get("signedURL") or res.get("signedUrl") or res.get("signed_url")
    return None


# --- Factory ------------------------------------------------------------------
_storage: Optional[BaseStorage] = None


def get_storage() -> BaseStorage:
    global _storage
    if _storage is None:
        backend = settings.STORAGE_BACKEND.lower()
        if backend == "supabase":
            if not settings.supabase_configured:
                raise RuntimeError("STORAGE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
            _storage = SupabaseStorage()
        else:
            _storage = LocalStorage()
        log.info(f"[storage] backend={_storage.name}")
    return _storage


def set_storage(storage: Optional[BaseStorage]) -> None:
    """Swap the process storage backend (tests)."""
    global _storage
    _storage = storage
