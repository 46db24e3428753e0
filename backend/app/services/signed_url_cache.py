# backend/app/services/signed_url_cache.py
"""
In-process TTL cache for signed preview URLs, keyed by photo id.

Galleries re-request the same photos constantly; signing each one again costs
a Storage round trip. Entries live SIGNED_URL_TTL_SECONDS and an expired
entry is never handed out. The cache can mirror itself into a backing
mapping (JSON under ``photo_url_cache``) so a restart or another worker
sharing that mapping starts warm.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, MutableMapping, Optional

from backend.app.config import settings

log = logging.getLogger(__name__)

STORAGE_KEY = "photo_url_cache"
SWEEP_INTERVAL_S = 300

Fetcher = Callable[[List[str]], Dict[str, str]]


def _ms(ts: float) -> int:
    return int(ts * 1000)


class SignedUrlCache:
    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        backing: Optional[MutableMapping[str, str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl_seconds
        self._backing = backing
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, dict] = {}
        self._hits = 0
        self._misses = 0
        self._last_sweep = clock()

    @property
    def ttl(self) -> int:
        return int(self._ttl if self._ttl is not None else settings.SIGNED_URL_TTL_SECONDS)

    # --- public API -----------------------------------------------------------
    def get(self, photo_id: str) -> Optional[str]:
        with self._lock:
            self._maybe_sweep()
            entry = self._entries.get(photo_id)
            if entry is None:
                self._misses += 1
                return None
            if entry["expires"] <= _ms(self._clock()):
                del self._entries[photo_id]
                self._misses += 1
                self._persist()
                return None
            self._hits += 1
            return entry["url"]

    def set(self, photo_id: str, url: str) -> None:
        with self._lock:
            now = _ms(self._clock())
            self._entries[photo_id] = {
                "url": url,
                "expires": now + self.ttl * 1000,
                "photoId": photo_id,
                "cachedAt": now,
            }
            self._persist()

    def remove(self, photo_id: str) -> None:
        with self._lock:
            if self._entries.pop(photo_id, None) is not None:
                self._persist()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
            if self._backing is not None:
                try:
                    self._backing.pop(STORAGE_KEY, None)
                except Exception as e:
                    log.debug(f"[url-cache] backing clear failed: {e}")

    def stats(self) -> dict:
        with self._lock:
            now = _ms(self._clock())
            entries = list(self._entries.values())
            requests_total = self._hits + self._misses
            hit_rate = round(self._hits / requests_total * 100) if requests_total else 0
            if not entries:
                return {"total_entries": 0, "hit_rate": hit_rate, "average_age": 0, "next_expiry": 0}
            avg_age = sum(now - e["cachedAt"] for e in entries) / len(entries) / 1000
            next_expiry = max(0, min(e["expires"] for e in entries) - now) / 1000
            return {
                "total_entries": len(entries),
                "hit_rate": hit_rate,
                "average_age": round(avg_age, 1),
                "next_expiry": round(next_expiry, 1),
            }

    def load(self) -> int:
        """Rebuild from the backing mapping, skipping expired entries."""
        with self._lock:
            if self._backing is None:
                return 0
            try:
                raw = self._backing.get(STORAGE_KEY)
                data = json.loads(raw) if raw else {}
            except Exception as e:
                log.debug(f"[url-cache] load failed: {e}")
                return 0
            now = _ms(self._clock())
            loaded = 0
            for photo_id, entry in (data or {}).items():
                if not isinstance(entry, dict) or "url" not in entry:
                    continue
                if int(entry.get("expires", 0)) <= now:
                    continue
                self._entries[photo_id] = {
                    "url": entry["url"],
                    "expires": int(entry["expires"]),
                    "photoId": entry.get("photoId", photo_id),
                    "cachedAt": int(entry.get("cachedAt", now)),
                }
                loaded += 1
            return loaded

    def preload(self, photo_ids: Iterable[str], fetcher: Fetcher) -> Dict[str, str]:
        """
        Return URLs for ``photo_ids``: cached hits as-is, misses via one
        ``fetcher(missing_ids)`` call. A failing fetcher leaves only the hits.
        """
        result: Dict[str, str] = {}
        missing: List[str] = []
        for pid in dict.fromkeys(photo_ids):
            url = self.get(pid)
            if url is not None:
                result[pid] = url
            else:
                missing.append(pid)

        if not missing:
            return result

        try:
            fetched = fetcher(missing) or {}
        except Exception as e:
            log.warning(f"[url-cache] preload fetch failed for {len(missing)} ids: {e}")
            return result

        for pid in missing:
            url = fetched.get(pid)
            if url:
                self.set(pid, url)
                result[pid] = url
        return result

    # --- internals ------------------------------------------------------------
    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < SWEEP_INTERVAL_S:
            return
        self._last_sweep = now
        self.sweep()

    def sweep(self) -> int:
        with self._lock:
            now = _ms(self._clock())
            expired = [pid for pid, e in self._entries.items() if e["expires"] <= now]
            for pid in expired:
                del self._entries[pid]
            if expired:
                log.debug(f"URL cache cleanup: removed {len(expired)} expired entries")
                self._persist()
            return len(expired)

    def _persist(self) -> None:
        if self._backing is None:
            return
        try:
            self._backing[STORAGE_KEY] = json.dumps(self._entries)
            return
        except Exception as e:
            log.debug(f"[url-cache] persist failed, evicting oldest half: {e}")

        oldest = sorted(self._entries, key=lambda pid: self._entries[pid]["cachedAt"])
        for pid in oldest[: len(oldest) // 2]:
            del self._entries[pid]
        try:
            self._backing[STORAGE_KEY] = json.dumps(self._entries)
        except Exception as e:
            log.debug(f"[url-cache] persist retry failed, keeping cache in memory only: {e}")


# Process-wide cache used by the gallery routes
url_cache = SignedUrlCache()
