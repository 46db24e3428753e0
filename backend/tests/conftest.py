# backend/tests/conftest.py
from __future__ import annotations

# Import/bootstrap so "import backend.app" works when running pytest from repo root
import io
import os
import sys
import tempfile
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).resolve().parent  # .../backend/tests
REPO_ROOT = TESTS_DIR.parent.parent  # repo root

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

# Deterministic test env: in-memory SQLite, local storage in a tmp dir,
# rate limiting off, a static admin token. Must be set before backend.app imports.
_TMP = tempfile.mkdtemp(prefix="lookescolar-tests-")
ADMIN_TOKEN = "test-admin-token-0123456789"

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["LOCAL_STORAGE_DIR"] = str(Path(_TMP) / "storage")
os.environ["LOG_DIR"] = str(Path(_TMP) / "logs")
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["ADMIN_API_TOKEN"] = ADMIN_TOKEN
os.environ["ADMIN_EMAILS"] = ""
os.environ["SUPABASE_URL"] = ""
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = ""
os.environ["MP_ACCESS_TOKEN"] = "TEST-access-token"
os.environ["MP_WEBHOOK_SECRET"] = ""

from PIL import Image  # noqa: E402

from backend.app.db import Base, SessionLocal, build_engine, set_engine  # noqa: E402
from backend.app.models import Event, Photo, PhotoSubject  # noqa: E402
from backend.app.services.signed_url_cache import url_cache  # noqa: E402
from backend.app.services.storage import LocalStorage, set_storage  # noqa: E402
from backend.app.services.tokens import token_service  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_singletons(tmp_path):
    token_service.reset()
    url_cache.clear()
    set_storage(LocalStorage(root=str(tmp_path / "storage")))
    yield
    set_storage(None)


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    set_engine(eng)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient

    from backend.app.main import app

    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


# --- factories -----------------------------------------------------------------
def make_image_bytes(size=(800, 600), color=(200, 120, 40), fmt="JPEG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def make_event(db):
    def _make(name="Escuela Norte 2024", status="active") -> Event:
        event = Event(name=name, school="Escuela Norte", status=status)
        db.add(event)
        db.commit()
        return event

    return _make


@pytest.fixture
def make_subject(db):
    def _make(event, name="Ana Pérez", days=30):
        subject = token_service.create_subject_with_token(db, event.id, name, expires_in_days=days)
        db.commit()
        return subject

    return _make


@pytest.fixture
def make_photo(db):
    def _make(event, folder_id=None, approved=True, subject=None, filename="foto.jpg") -> Photo:
        photo = Photo(
            event_id=event.id,
            folder_id=folder_id,
            original_filename=filename,
            storage_path=f"events/{event.id}/originals/{filename}",
            preview_path=f"events/{event.id}/previews/{filename}.webp",
            width=512,
            height=384,
            approved=approved,
        )
        db.add(photo)
        db.flush()
        if subject is not None:
            db.add(PhotoSubject(photo_id=photo.id, subject_id=subject.id))
        db.commit()
        return photo

    return _make


@pytest.fixture
def make_order(db):
    from backend.app.models import Order, OrderItem
    from backend.app.services.orders import generate_order_number

    def _make(event, subject, photo=None, status="pending", total_cents=1000, coupon_id=None, discount_cents=0):
        order = Order(
            order_number=generate_order_number(),
            event_id=event.id,
            subject_id=subject.id,
            contact_name="María López",
            contact_email="maria@example.com",
            status=status,
            subtotal_cents=total_cents + discount_cents,
            discount_cents=discount_cents,
            total_cents=total_cents,
            coupon_id=coupon_id,
        )
        if photo is not None:
            order.items.append(
                OrderItem(
                    photo_id=photo.id,
                    label="Foto Digital",
                    quantity=1,
                    unit_price_cents=total_cents + discount_cents,
                    subtotal_cents=total_cents + discount_cents,
                )
            )
        db.add(order)
        db.commit()
        return order

    return _make
