import hashlib
import hmac
import json
from unittest.mock import patch

from sqlalchemy import func, select

from backend.app.config import settings
from backend.app.limiter import limiter
from backend.app.models import Order, Payment
from backend.app.services.mercadopago import MercadoPagoError, Preference
from backend.app.services.storage import get_storage
from conftest import make_image_bytes


class TestStatusAndErrors:
    def test_health(self, client):
        """Liveness check"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"ok": True}

    def test_status_reports_db(self, client):
        """/status checks the database and reports counters"""
        r = client.get("/status")
        assert r.status_code == 200
        body = r.json()
        assert body["ok"] is True
        assert "url_cache" in body

    def test_unknown_route_uses_envelope(self, client):
        """404s come back as {ok: false, error}"""
        r = client.get("/api/nope")
        assert r.status_code == 404
        assert r.json()["ok"] is False

    def test_validation_error_is_400(self, client, admin_headers):
        """Body validation failures are 400 with field details"""
        r = client.post("/api/admin/events", json={"name": "x"}, headers=admin_headers)
        assert r.status_code == 400
        body = r.json()
        assert body["error"] == "Datos inválidos"
        assert body["details"][0]["field"] == "name"


class TestAdminAuth:
    def test_missing_token(self, client):
        """Admin routes need a bearer token"""
        r = client.get("/api/admin/events")
        assert r.status_code == 401
        assert r.json() == {"ok": False, "error": "No autorizado"}

    def test_wrong_token(self, client):
        """A wrong token is rejected"""
        r = client.get("/api/admin/events", headers={"Authorization": "Bearer wrong"})
        assert r.status_code == 401

    def test_me(self, client, admin_headers):
        """The static API token identifies as method=token"""
        r = client.get("/api/admin/auth/me", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["admin"]["method"] == "token"


class TestAdminFlow:
    def test_event_subjects_and_upload(self, client, admin_headers):
        """Create an event, add a subject, upload a photo and tag it"""
        r = client.post("/api/admin/events", json={"name": "Escuela Sur", "school": "Sur"}, headers=admin_headers)
        assert r.status_code == 201
        event_id = r.json()["event"]["id"]

        r = client.post(
            f"/api/admin/events/{event_id}/subjects",
            json={"subjects": [{"name": "Juan Gómez", "grade": "3A"}]},
            headers=admin_headers,
        )
        assert r.status_code == 201
        subject = r.json()["subjects"][0]
        assert len(subject["token"]) >= settings.TOKEN_MIN_LENGTH

        r = client.post(
            "/api/admin/photos/upload",
            data={"event_id": event_id},
            files=[("files", ("foto.jpg", make_image_bytes(), "image/jpeg"))],
            headers=admin_headers,
        )
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["ok"] is True
        assert body["stats"]["processed"] == 1
        photo_id = body["uploaded"][0]["id"]

        r = client.post(
            "/api/admin/tagging", json={"subject_id": subject["id"], "photo_ids": [photo_id]}, headers=admin_headers
        )
        assert r.status_code == 200
        r = client.get(f"/api/admin/subjects/{subject['id']}/photos", headers=admin_headers)
        assert [p["id"] for p in r.json()["photos"]] == [photo_id]

    def test_upload_rejects_non_images(self, client, admin_headers, make_event):
        """An all-invalid upload is a 400 with per-file errors"""
        event = make_event()
        r = client.post(
            "/api/admin/photos/upload",
            data={"event_id": event.id},
            files=[("files", ("doc.pdf", b"%PDF-1.4", "application/pdf"))],
            headers=admin_headers,
        )
        assert r.status_code == 400
        assert r.json()["details"]["errors"][0]["filename"] == "doc.pdf"

    def test_upload_too_many_files(self, client, admin_headers, make_event):
        """More files than the per-request cap is a 400 before anything is read"""
        event = make_event()
        files = [("files", (f"f{i}.jpg", make_image_bytes(color=(i, i, i)), "image/jpeg")) for i in range(2)]
        with patch.object(settings, "MAX_UPLOAD_FILES", 1):
            r = client.post(
                "/api/admin/photos/upload", data={"event_id": event.id}, files=files, headers=admin_headers
            )
        assert r.status_code == 400
        assert "Máximo 1 archivos" in r.json()["error"]

    def test_upload_oversized_file(self, client, admin_headers, make_event):
        """A file over the byte cap is reported per file"""
        event = make_event()
        with patch.object(settings, "MAX_FILE_BYTES", 100):
            r = client.post(
                "/api/admin/photos/upload",
                data={"event_id": event.id},
                files=[("files", ("big.jpg", make_image_bytes(size=(1200, 900)), "image/jpeg"))],
                headers=admin_headers,
            )
        assert r.status_code == 400
        error = r.json()["details"]["errors"][0]
        assert error["filename"] == "big.jpg"
        assert "supera el máximo" in error["error"]

    def test_delete_purchased_photo_conflict(
        self, client, admin_headers, make_event, make_subject, make_photo, make_order
    ):
        """Photos already sold cannot be deleted"""
        event = make_event()
        subject = make_subject(event)
        photo = make_photo(event, subject=subject)
        make_order(event, subject, photo=photo)

        r = client.request("DELETE", "/api/admin/photos", json={"photo_ids": [photo.id]}, headers=admin_headers)

        assert r.status_code == 409
        assert r.json()["details"]["photo_ids"] == [photo.id]

    def test_folder_create_and_root_listing(self, client, admin_headers, make_event):
        """Folders are created under an event and listed from the root"""
        event = make_event()
        r = client.post(
            "/api/admin/folders", json={"event_id": event.id, "name": "Sala Roja"}, headers=admin_headers
        )
        assert r.status_code == 201
        r = client.get(
            "/api/admin/folders", params={"event_id": event.id, "parent_id": "root"}, headers=admin_headers
        )
        assert r.status_code == 200
        assert [f["name"] for f in r.json()["folders"]] == ["Sala Roja"]


class TestFamilyRoutes:
    def test_gallery_lists_only_approved_tagged(self, client, make_event, make_subject, make_photo):
        """The gallery shows the subject's approved photos with preview URLs"""
        event = make_event()
        subject = make_subject(event)
        visible = make_photo(event, subject=subject, filename="ok.jpg")
        make_photo(event, subject=subject, approved=False, filename="pending.jpg")
        make_photo(event, filename="other.jpg")

        r = client.get(f"/api/family/gallery/{subject.token}")

        assert r.status_code == 200
        body = r.json()
        assert body["subject"]["name"] == subject.name
        assert [p["id"] for p in body["photos"]] == [visible.id]
        assert "/storage/photos/" in body["photos"][0]["preview_url"]

    def test_gallery_bad_token(self, client, engine):
        """Unknown tokens are 401 with the reason as code"""
        r = client.get("/api/family/gallery/" + "Z" * 24)
        assert r.status_code == 401
        assert r.json()["code"] == "not-found"

    def test_checkout(self, client, make_event, make_subject, make_photo):
        """Checkout creates a pending order and returns the gateway redirect"""
        event = make_event()
        subject = make_subject(event)
        photo = make_photo(event, subject=subject)
        pref = Preference("pref-9", "https://mp/live", "https://mp/sandbox")

        with patch("backend.app.services.mercadopago.create_preference", return_value=pref) as mock_pref:
            r = client.post(
                "/api/family/checkout",
                json={
                    "token": subject.token,
                    "contact_info": {"name": "Laura Díaz", "email": "laura@example.com"},
                    "items": [{"photo_id": photo.id, "quantity": 2}],
                },
            )

        assert r.status_code == 200, r.text
        body = r.json()
        assert body["ok"] is True
        assert body["preference_id"] == "pref-9"
        assert body["redirect_url"] == "https://mp/sandbox"
        assert body["total_cents"] == 2000
        mock_pref.assert_called_once()

    def test_checkout_validation(self, client):
        """Malformed checkout bodies are 400"""
        r = client.post("/api/family/checkout", json={"token": "short", "items": []})
        assert r.status_code == 400

    def test_checkout_rate_limited(self, client, engine):
        """Checkout answers 429 once the per-client limit is spent"""
        body = {
            "token": "Z" * 24,
            "contact_info": {"name": "Laura Díaz", "email": "laura@example.com"},
            "items": [{"photo_id": "00000000-0000-4000-8000-000000000000", "quantity": 1}],
        }
        allowed = int(settings.RATE_LIMIT_CHECKOUT.split("/")[0])
        limiter.reset()
        try:
            with patch.object(limiter, "enabled", True):
                codes = [client.post("/api/family/checkout", json=body).status_code for _ in range(allowed + 1)]
        finally:
            limiter.reset()

        assert 429 not in codes[:allowed]
        assert codes[-1] == 429

    def test_public_share_password(self, client, db, make_event, make_photo):
        """Password-protected shares ask first, then open with the header"""
        from backend.app.services import shares

        event = make_event()
        make_photo(event)
        share = shares.create_share(db, event.id, "event", title="Acto", password="clave123")
        db.commit()

        r = client.get(f"/api/public/gallery/{share.token}")
        assert r.json() == {"ok": False, "password_required": True, "title": "Acto"}

        r = client.get(f"/api/public/gallery/{share.token}", headers={"X-Share-Password": "clave123"})
        assert r.status_code == 200
        assert len(r.json()["photos"]) == 1


class TestWebhook:
    def _payment(self, order_id):
        return {
            "id": 777,
            "status": "approved",
            "status_detail": "accredited",
            "external_reference": order_id,
            "transaction_amount": 10.0,
        }

    def test_idempotent(self, client, db, make_event, make_subject, make_order):
        """The same notification twice yields one payment and a duplicate flag"""
        event = make_event()
        order = make_order(event, make_subject(event))
        payload = {"type": "payment", "data": {"id": "777"}}

        with patch("backend.app.services.mercadopago.get_payment", return_value=self._payment(order.id)):
            first = client.post("/api/payments/webhook", json=payload)
            second = client.post("/api/payments/webhook", json=payload)

        assert first.status_code == 200
        assert first.json()["status"] == "approved"
        assert first.json()["duplicate"] is False
        assert second.json()["duplicate"] is True
        db.expire_all()
        assert db.scalar(select(func.count(Payment.id))) == 1
        assert db.get(Order, order.id).status == "approved"

    def test_other_topics_ignored(self, client, engine):
        """merchant_order and friends are acknowledged and ignored"""
        r = client.post("/api/payments/webhook", json={"type": "merchant_order", "data": {"id": "1"}})
        assert r.json() == {"ok": True, "ignored": "merchant_order"}

    def test_signature_required_when_secret_set(self, client, engine):
        """With a secret configured, unsigned or badly signed calls are 401"""
        payload = json.dumps({"type": "payment", "data": {"id": "1"}}).encode()
        with patch.object(settings, "MP_WEBHOOK_SECRET", "secret"):
            r = client.post("/api/payments/webhook", content=payload)
            assert r.status_code == 401
            r = client.post("/api/payments/webhook", content=payload, headers={"x-signature": "v1=deadbeef"})
            assert r.status_code == 401

    def test_valid_body_signature(self, client, engine):
        """A correct body HMAC passes through to processing"""
        payload = json.dumps({"type": "payment", "data": {"id": "1"}}).encode()
        sig = hmac.new(b"secret", payload, hashlib.sha256).hexdigest()
        with patch.object(settings, "MP_WEBHOOK_SECRET", "secret"), patch(
            "backend.app.services.mercadopago.get_payment", return_value={"id": 1, "status": "approved"}
        ):
            r = client.post("/api/payments/webhook", content=payload, headers={"x-signature": f"v1={sig}"})
        assert r.status_code == 200
        assert r.json()["ok"] is False

    def test_payment_unknown_to_gateway(self, client, engine):
        """A payment MP answers 404 for is acknowledged so it is not retried"""
        payload = {"type": "payment", "data": {"id": "404404"}}
        with patch(
            "backend.app.services.mercadopago.get_payment",
            side_effect=MercadoPagoError("Pago no encontrado en Mercado Pago", status=404),
        ):
            r = client.post("/api/payments/webhook", json=payload)
        assert r.status_code == 200
        assert r.json() == {"ok": False, "message": "Pago no encontrado en Mercado Pago"}

    def test_gateway_failure_is_502(self, client, engine):
        """Other gateway errors are a 502 so MP retries"""
        payload = {"type": "payment", "data": {"id": "1"}}
        with patch(
            "backend.app.services.mercadopago.get_payment",
            side_effect=MercadoPagoError("MP respondió 503", status=503),
        ):
            r = client.post("/api/payments/webhook", json=payload)
        assert r.status_code == 502
        assert r.json()["ok"] is False


class TestLocalStorageRoute:
    def test_signed_url_serves_file(self, client):
        """A fresh signed URL returns the stored bytes"""
        storage = get_storage()
        storage.upload("photos", "events/e1/previews/x.webp", b"RIFFdata", "image/webp")
        url = storage.create_signed_url("photos", "events/e1/previews/x.webp", 60)

        r = client.get(url)

        assert r.status_code == 200
        assert r.content == b"RIFFdata"

    def test_bad_signature(self, client):
        """Tampered signatures are 403"""
        storage = get_storage()
        storage.upload("photos", "events/e1/previews/x.webp", b"RIFFdata", "image/webp")
        r = client.get("/storage/photos/events/e1/previews/x.webp", params={"expires": 9999999999, "signature": "00"})
        assert r.status_code == 403
        assert r.json()["ok"] is False
