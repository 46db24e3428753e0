# backend/app/telemetry.py
"""
Process-wide counters and the structured event log (data/logs/api.jsonl).

Every public method swallows its own failures: a full disk or a bad field
must never turn a purchase or an upload into a 500.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from backend.app.config import settings
from backend.app.utils.security import mask_token

log = logging.getLogger(__name__)

COUNTERS = (
    "uploads_total",
    "uploads_failed",
    "checkouts_total",
    "checkouts_failed",
    "webhooks_total",
    "webhooks_duplicate",
)

# keys scrubbed from log_json fields whatever the caller passes
SENSITIVE_KEYS = ("token", "password", "signature", "access_token", "url")

ROTATE_KEEP = 2


class Telemetry:
    def __init__(self, log_dir: Optional[str] = None, log_name: str = "api.jsonl"):
        self._lock = threading.Lock()
        self._started = time.time()
        self._counts: Dict[str, int] = dict.fromkeys(COUNTERS, 0)
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[str] = None

        self._dir = Path(log_dir or settings.LOG_DIR)
        self._path = self._dir / log_name
        self._limit_bytes = settings.MAX_LOG_MB * 1024 * 1024
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning(f"[telemetry] cannot create {self._dir}: {e}")

    @property
    def log_path(self) -> Path:
        return self._path

    def increment(self, name: str, by: int = 1) -> None:
        """Bump a known counter; unknown names are dropped."""
        try:
            with self._lock:
                if name in self._counts:
                    self._counts[name] += by
        except Exception as e:
            log.debug(f"[telemetry] increment {name} failed: {e}")

    def set_error(self, error: str) -> None:
        try:
            with self._lock:
                self._last_error = str(error)[:500]
                self._last_error_at = datetime.now(timezone.utc).isoformat()
        except Exception as e:
            log.debug(f"[telemetry] set_error failed: {e}")

    def log_json(self, event: str, level: str = "info", **fields: Any) -> None:
        """Append one JSON line: ts, level, subsystem, event and the scrubbed fields."""
        try:
            entry = {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": level,
                "subsystem": "api",
                "event": event,
            }
            entry.update(_scrub(fields))
            line = json.dumps(entry, ensure_ascii=False, default=str)
            with self._lock:
                self._rotate_if_needed()
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except Exception as e:
            log.debug(f"[telemetry] log_json {event} failed: {e}")

    def _rotate_if_needed(self) -> None:
        # api.jsonl -> api.jsonl.1 -> api.jsonl.2; the oldest is dropped
        try:
            if not self._path.exists() or self._path.stat().st_size <= self._limit_bytes:
                return
            for idx in range(ROTATE_KEEP, 0, -1):
                older = self._path.with_name(f"{self._path.name}.{idx}")
                newer = self._path if idx == 1 else self._path.with_name(f"{self._path.name}.{idx - 1}")
                if idx == ROTATE_KEEP and older.exists():
                    older.unlink()
                if newer.exists():
                    newer.rename(older)
        except OSError as e:
            log.warning(f"[telemetry] rotation failed: {e}")

    def get_stats(self) -> Dict[str, Any]:
        try:
            with self._lock:
                counts = dict(self._counts)
                last_error, last_error_at = self._last_error, self._last_error_at
            webhooks = counts["webhooks_total"]
            return {
                "uptime_s": int(time.time() - self._started),
                **counts,
                "webhook_duplicate_ratio": round(counts["webhooks_duplicate"] / webhooks, 3) if webhooks else 0.0,
                "last_error": last_error,
                "last_error_at": last_error_at,
            }
        except Exception as e:
            log.debug(f"[telemetry] get_stats failed: {e}")
            return {"uptime_s": 0, **dict.fromkeys(COUNTERS, 0), "last_error": None}

    def reset(self) -> None:
        with self._lock:
            self._counts = dict.fromkeys(COUNTERS, 0)
            self._last_error = None
            self._last_error_at = None


def _scrub(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, val in fields.items():
        if any(s in key.lower() for s in SENSITIVE_KEYS) and isinstance(val, str):
            out[key] = mask_token(val)
        else:
            out[key] = val
    return out


telemetry = Telemetry()
