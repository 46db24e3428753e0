import pytest
from sqlalchemy import select

from backend.app.config import settings
from backend.app.errors import NotFound
from backend.app.models import AuditLog
from backend.app.services.tokens import TokenService

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return TokenService(clock=clock)


class TestTokenService:
    def test_create_subject_with_token(self, db, make_event, service):
        """Subjects get a unique token, an expiry and an audit entry"""
        event = make_event()
        subject = service.create_subject_with_token(db, event.id, "  Juan  ", expires_in_days=10)
        db.commit()

        assert subject.name == "Juan"
        assert len(subject.token) >= settings.TOKEN_MIN_LENGTH
        entry = db.scalar(select(AuditLog).where(AuditLog.action == "token.create"))
        assert entry.resource_id == subject.id
        assert subject.token not in str(entry.details)

    def test_create_for_unknown_event(self, db, service):
        """Unknown events are a 404"""
        with pytest.raises(NotFound):
            service.create_subject_with_token(db, "missing", "Juan")

    def test_valid_token(self, db, make_event, service):
        """A fresh token validates with its remaining days rounded up"""
        event = make_event()
        subject = service.create_subject_with_token(db, event.id, "Juan", expires_in_days=10)
        db.commit()

        check = service.validate_token(db, subject.token)
        assert check.valid
        assert check.subject_id == subject.id
        assert check.event_id == event.id
        assert check.remaining_days == 10

    def test_expired_token(self, db, make_event, service, clock):
        """Past its expiry the token reports expired"""
        event = make_event()
        subject = service.create_subject_with_token(db, event.id, "Juan", expires_in_days=1)
        db.commit()
        clock.advance(86400)

        check = service.validate_token(db, subject.token)
        assert not check.valid
        assert check.reason == "expired"

    def test_invalid_format_checked_first(self, db, service):
        """Malformed tokens never reach the database"""
        assert service.validate_token(db, "short").reason == "invalid-format"
        assert service.validate_token(db, None).reason == "invalid-format"

    def test_failed_attempts_blacklist(self, db, service):
        """Repeated misses blacklist the token"""
        token = "Z" * 24
        for _ in range(settings.TOKEN_MAX_FAILED_ATTEMPTS):
            assert service.validate_token(db, token).reason == "not-found"
        assert service.is_blacklisted(token)
        assert service.validate_token(db, token).reason == "blacklisted"

    def test_rate_limit_window(self, db, make_event, service, clock):
        """Too many lookups in a minute are refused until the window resets"""
        event = make_event()
        subject = service.create_subject_with_token(db, event.id, "Juan")
        db.commit()

        for _ in range(settings.TOKEN_RATE_LIMIT_PER_MINUTE):
            assert service.validate_token(db, subject.token).valid
        assert service.validate_token(db, subject.token).reason == "rate-limited"

        clock.advance(61)
        assert service.validate_token(db, subject.token).valid

    def test_blacklist_expires(self, service, clock):
        """Blacklist entries lapse after their TTL and are cleaned up"""
        service.blacklist_token("A" * 24, "manual", ttl_hours=1)
        assert service.is_blacklisted("A" * 24)
        clock.advance(3601)
        assert not service.is_blacklisted("A" * 24)
        assert service.cleanup_expired_blacklist() == 1

    def test_rotate_token(self, db, make_event, service):
        """Rotation issues a new token and blacklists the old one"""
        event = make_event()
        subject = service.create_subject_with_token(db, event.id, "Juan")
        db.commit()
        old = subject.token

        rotated = service.rotate_token(db, old, expires_in_days=5)
        db.commit()

        assert rotated.token != old
        assert service.validate_token(db, old).reason == "blacklisted"
        check = service.validate_token(db, rotated.token)
        assert check.valid and check.remaining_days == 5
        assert db.scalar(select(AuditLog).where(AuditLog.action == "token.rotate")) is not None

    def test_rotate_unknown_token(self, db, service):
        """Rotating a token nobody owns is a 404"""
        with pytest.raises(NotFound):
            service.rotate_token(db, "Q" * 24)

    def test_expiring_soon_and_metrics(self, db, make_event, service):
        """Report lists only tokens inside the threshold"""
        event = make_event()
        soon = service.create_subject_with_token(db, event.id, "Pronto", expires_in_days=3)
        service.create_subject_with_token(db, event.id, "Lejos", expires_in_days=60)
        db.commit()

        rows = service.get_tokens_expiring_soon(db, threshold_days=7)
        assert [r["subject_id"] for r in rows] == [soon.id]
        assert rows[0]["days_remaining"] == 3
        assert rows[0]["token"].startswith("tok_")

        metrics = service.get_token_metrics(db)
        assert metrics["total_tokens"] == 2
        assert metrics["active_tokens"] == 2
        assert metrics["expiring_soon"] == 1
