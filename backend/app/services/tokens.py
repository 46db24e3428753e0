# backend/app/services/tokens.py
"""
Family access tokens (one per subject).

Validation order matters and is observable through ``reason``:
    invalid-format -> blacklisted -> rate-limited -> not-found -> expired

Blacklist and per-token counters live in process memory (a token lookup
storm against one worker is what they guard against); the token itself and
its expiry live on the subject row.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.errors import NotFound, ValidationFailed
from backend.app.models import Event, Subject, as_utc
from backend.app.services import audit
from backend.app.telemetry import telemetry
from backend.app.utils.security import generate_secure_token, is_token_format_valid, mask_token

log = logging.getLogger(__name__)

RATE_WINDOW_S = 60
DAY_S = 86400


@dataclass
class TokenValidation:
    valid: bool
    reason: Optional[str] = None
    subject_id: Optional[str] = None
    event_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    remaining_days: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "subject_id": self.subject_id,
            "event_id": self.event_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "remaining_days": self.remaining_days,
        }


@dataclass
class _RateEntry:
    count: int
    reset_at: float
    failed_attempts: int = 0


class TokenService:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._blacklist: Dict[str, Dict] = {}
        self._rate: Dict[str, _RateEntry] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # --- creation ------------------------------------------------------------
    def create_subject_with_token(
        self,
        db: Session,
        event_id: str,
        name: str,
        grade: Optional[str] = None,
        expires_in_days: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> Subject:
        event = db.get(Event, event_id)
        if event is None:
            raise NotFound("Evento no encontrado")
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("El nombre es obligatorio")

        days = expires_in_days if expires_in_days is not None else settings.TOKEN_EXPIRY_DAYS
        if days < 1:
            raise ValidationFailed("La vigencia del token debe ser de al menos un día")

        token = self._unique_token(db)
        subject = Subject(
            event_id=event_id,
            name=name,
            grade=grade,
            token=token,
            token_expires_at=self._now() + timedelta(days=days),
        )
        db.add(subject)
        db.flush()
        audit.log_action(
            db,
            "token.create",
            "subject",
            subject.id,
            actor=actor,
            details={"event_id": event_id, "token": mask_token(token), "expires_in_days": days},
        )
        log.info(f"[tokens] created subject={subject.id} token={mask_token(token)} days={days}")
        return subject

    def _unique_token(self, db: Session) -> str:
        length = max(settings.TOKEN_MIN_LENGTH, 24)
        for _ in range(5):
            token = generate_secure_token(length)
            exists = db.scalar(select(Subject.id).where(Subject.token == token))
            if not exists:
                return token
        raise RuntimeError("could not generate a unique token")

    # --- validation ----------------------------------------------------------
    def validate_token(self, db: Session, token: Optional[str]) -> TokenValidation:
        if not is_token_format_valid(token, settings.TOKEN_MIN_LENGTH):
            log.debug(f"[tokens] invalid format token={mask_token(token)}")
            return TokenValidation(False, "invalid-format")

        if self.is_blacklisted(token):
            log.warning(f"[tokens] blacklisted token used token={mask_token(token)}")
            return TokenValidation(False, "blacklisted")

        if not self._check_rate(token):
            log.warning(f"[tokens] rate limited token={mask_token(token)}")
            return TokenValidation(False, "rate-limited")

        subject = db.scalar(select(Subject).where(Subject.token == token))
        if subject is None:
            self._record_failed_attempt(token)
            return TokenValidation(False, "not-found")

        now = self._now()
        expires_at = as_utc(subject.token_expires_at)
        if expires_at <= now:
            return TokenValidation(
                False, "expired", subject_id=subject.id, event_id=subject.event_id, expires_at=expires_at
            )

        remaining = math.ceil((expires_at - now).total_seconds() / DAY_S)
        return TokenValidation(
            True,
            subject_id=subject.id,
            event_id=subject.event_id,
            expires_at=expires_at,
            remaining_days=remaining,
        )

    def _check_rate(self, token: str) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._rate.get(token)
            if entry is None:
                entry = _RateEntry(count=0, reset_at=now + RATE_WINDOW_S)
                self._rate[token] = entry
            if now >= entry.reset_at:
                entry.count = 0
                entry.reset_at = now + RATE_WINDOW_S
            entry.count += 1
            if entry.failed_attempts >= settings.TOKEN_MAX_FAILED_ATTEMPTS:
                return False
            return entry.count <= settings.TOKEN_RATE_LIMIT_PER_MINUTE

    def _record_failed_attempt(self, token: str) -> None:
        with self._lock:
            entry = self._rate.get(token)
            if entry is None:
                return
            entry.failed_attempts += 1
            reached = entry.failed_attempts >= settings.TOKEN_MAX_FAILED_ATTEMPTS
        if reached:
            self.blacklist_token(token, "too-many-failed-attempts")

    # --- blacklist -----------------------------------------------------------
    def blacklist_token(self, token: str, reason: str, ttl_hours: Optional[int] = None) -> None:
        hours = ttl_hours if ttl_hours is not None else settings.TOKEN_BLACKLIST_TTL_HOURS
        expires = self._clock() + hours * 3600
        with self._lock:
            self._blacklist[token] = {"reason": reason, "expires_at": expires}
        telemetry.log_json("token_blacklisted", level="warning", token=mask_token(token), reason=reason)
        log.warning(f"[tokens] blacklisted token={mask_token(token)} reason={reason}")

    def is_blacklisted(self, token: str) -> bool:
        with self._lock:
            entry = self._blacklist.get(token)
            return bool(entry and entry["expires_at"] > self._clock())

    def cleanup_expired_blacklist(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, e in self._blacklist.items() if e["expires_at"] <= now]
            for t in expired:
                del self._blacklist[t]
        if expired:
            log.debug(f"[tokens] removed {len(expired)} expired blacklist entries")
        return len(expired)

    # --- rotation & reporting ------------------------------------------------
    def rotate_token(
        self,
        db: Session,
        current_token: str,
        expires_in_days: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> Subject:
        subject = db.scalar(select(Subject).where(Subject.token == current_token))
        if subject is None:
            raise NotFound("Token no encontrado")
        return self.rotate_subject_token(db, subject, expires_in_days, actor)

    def rotate_subject_token(
        self,
        db: Session,
        subject: Subject,
        expires_in_days: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> Subject:
        old = subject.token
        days = expires_in_days if expires_in_days is not None else settings.TOKEN_EXPIRY_DAYS
        subject.token = self._unique_token(db)
        subject.token_expires_at = self._now() + timedelta(days=days)
        db.flush()
        self.blacklist_token(old, "rotated")
        audit.log_action(
            db,
            "token.rotate",
            "subject",
            subject.id,
            actor=actor,
            details={"old_token": mask_token(old), "new_token": mask_token(subject.token)},
        )
        return subject

    def get_tokens_expiring_soon(self, db: Session, threshold_days: Optional[int] = None) -> List[dict]:
        days = threshold_days if threshold_days is not None else settings.TOKEN_ROTATION_THRESHOLD_DAYS
        now = self._now()
        limit = now + timedelta(days=days)
        rows = db.scalars(
            select(Subject)
            .where(Subject.token_expires_at > now, Subject.token_expires_at <= limit)
            .order_by(Subject.token_expires_at.asc())
        )
        out = []
        for s in rows:
            expires_at = as_utc(s.token_expires_at)
            out.append(
                {
                    "subject_id": s.id,
                    "event_id": s.event_id,
                    "name": s.name,
                    "token": mask_token(s.token),
                    "expires_at": expires_at.isoformat(),
                    "days_remaining": math.ceil((expires_at - now).total_seconds() / DAY_S),
                }
            )
        return out

    def get_token_metrics(self, db: Session) -> dict:
        now = self._now()
        soon = now + timedelta(days=settings.TOKEN_ROTATION_THRESHOLD_DAYS)
        total = db.scalar(select(func.count(Subject.id))) or 0
        active = db.scalar(select(func.count(Subject.id)).where(Subject.token_expires_at > now)) or 0
        expiring = (
            db.scalar(
                select(func.count(Subject.id)).where(
                    Subject.token_expires_at > now, Subject.token_expires_at <= soon
                )
            )
            or 0
        )
        clock_now = self._clock()
        with self._lock:
            blacklisted = sum(1 for e in self._blacklist.values() if e["expires_at"] > clock_now)
            failed = sum(e.failed_attempts for e in self._rate.values())
        return {
            "total_tokens": total,
            "active_tokens": active,
            "expiring_soon": expiring,
            "blacklisted_tokens": blacklisted,
            "failed_validations": failed,
        }

    def reset(self) -> None:
        """Drop in-memory blacklist and counters (tests)."""
        with self._lock:
            self._blacklist.clear()
            self._rate.clear()


token_service = TokenService()
