"""Token, id and filename helpers shared by services and routers.

Stdlib-only so services can import it without pulling the web stack:
  * generate_secure_token(length) -> unambiguous alphanumeric token
  * mask_token / mask_id -> values safe for logs
  * sanitize_filename / is_valid_storage_path -> storage key hygiene
  * hash_share_password / safe_compare -> share passwords, header secrets
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
import unicodedata
from typing import Optional

# No 0/O, 1/l/I: tokens get read aloud and typed from printed cards
TOKEN_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz"
TOKEN_MIN_LENGTH = 20

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_FILENAME_BAD = re.compile(r"[^A-Za-z0-9._-]+")
_STORAGE_PATH_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")


def generate_secure_token(length: int = 24) -> str:
    if length < TOKEN_MIN_LENGTH:
        raise ValueError(f"token length must be >= {TOKEN_MIN_LENGTH}, got {length}")
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))


def is_token_format_valid(token: Optional[str], min_length: int = TOKEN_MIN_LENGTH) -> bool:
    if not token or len(token) < min_length or len(token) > 128:
        return False
    return bool(_TOKEN_RE.match(token))


def mask_token(token: Optional[str]) -> str:
    """'abcdef...' -> 'tok_abc***'."""
    if not token:
        return "tok_***"
    return f"tok_{token[:3]}***"


def mask_id(value: Optional[str]) -> str:
    """Keep the last four characters of payment/order ids."""
    if not value:
        return "***"
    value = str(value)
    if len(value) <= 4:
        return "***"
    return f"***{value[-4:]}"


def sanitize_filename(name: Optional[str], default: str = "photo") -> str:
    name = unicodedata.normalize("NFKD", name or "").encode("ascii", "ignore").decode("ascii")
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    name = _FILENAME_BAD.sub("-", name).strip(".-_")
    if not name:
        return default
    return name[:120]


def is_allowed_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    return content_type.split(";", 1)[0].strip().lower() in ALLOWED_CONTENT_TYPES


def is_valid_storage_path(path: Optional[str]) -> bool:
    """Relative key, no traversal, no absolute paths, no empty segments."""
    if not path or len(path) > 512:
        return False
    if not _STORAGE_PATH_RE.match(path):
        return False
    parts = path.split("/")
    return all(p not in ("", ".", "..") for p in parts)


def hash_share_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def safe_compare(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
