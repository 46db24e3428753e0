from datetime import timedelta

import pytest

from backend.app.errors import Forbidden, Gone, NotFound, Unauthorized, ValidationFailed
from backend.app.models import utcnow
from backend.app.services import folders, shares


@pytest.fixture
def event(make_event):
    return make_event()


class TestCreateShare:
    def test_event_share(self, db, event):
        """Event shares get a 32-char token and a public URL"""
        share = shares.create_share(db, event.id, "event", title="Acto")
        data = shares.serialize(share)
        assert len(share.token) == 32
        assert data["share_url"].endswith(f"/s/{share.token}")
        assert data["has_password"] is False

    def test_photo_share_must_stay_in_event(self, db, event, make_event, make_photo):
        """Photo selections cannot reach into another event"""
        foreign = make_photo(make_event(name="Otro"))
        with pytest.raises(ValidationFailed):
            shares.create_share(db, event.id, "photos", photo_ids=[foreign.id])

    def test_folder_share_requires_folder(self, db, event):
        """Folder shares need a folder of the event"""
        with pytest.raises(ValidationFailed):
            shares.create_share(db, event.id, "folder")
        with pytest.raises(NotFound):
            shares.create_share(db, event.id, "folder", folder_id="missing")

    def test_past_expiry_rejected(self, db, event):
        """Expiry must be in the future"""
        with pytest.raises(ValidationFailed):
            shares.create_share(db, event.id, "event", expires_at=utcnow() - timedelta(hours=1))


class TestAccessShare:
    def test_event_scope_only_approved(self, db, event, make_photo):
        """Galleries list approved photos with signed previews and count the view"""
        ok = make_photo(event, filename="ok.jpg")
        make_photo(event, approved=False, filename="hidden.jpg")
        share = shares.create_share(db, event.id, "event")

        access = shares.access_share(db, share.token)

        assert [p["id"] for p in access.photos] == [ok.id]
        assert "/storage/" in access.photos[0]["preview_url"]
        assert "download_url" not in access.photos[0]
        db.refresh(share)
        assert share.view_count == 1

    def test_folder_scope_with_descendants(self, db, event, make_photo):
        """include_descendants pulls in subfolder photos"""
        parent = folders.create_folder(db, event.id, "Primaria")
        child = folders.create_folder(db, event.id, "1A", parent_id=parent["id"])
        p1 = make_photo(event, folder_id=parent["id"], filename="p1.jpg")
        p2 = make_photo(event, folder_id=child["id"], filename="p2.jpg")
        make_photo(event, filename="root.jpg")

        flat = shares.create_share(db, event.id, "folder", folder_id=parent["id"])
        deep = shares.create_share(db, event.id, "folder", folder_id=parent["id"], include_descendants=True)

        assert {p["id"] for p in shares.access_share(db, flat.token).photos} == {p1.id}
        assert {p["id"] for p in shares.access_share(db, deep.token).photos} == {p1.id, p2.id}

    def test_download_urls_when_allowed(self, db, event, make_photo):
        """allow_download adds original URLs"""
        make_photo(event)
        share = shares.create_share(db, event.id, "event", allow_download=True)
        photo = shares.access_share(db, share.token).photos[0]
        assert "/storage/photo-private/" in photo["download_url"]

    def test_password_flow(self, db, event, make_photo):
        """No password asks for one; wrong one is 401; right one opens"""
        make_photo(event)
        share = shares.create_share(db, event.id, "event", password="clave123")

        pending = shares.access_share(db, share.token)
        assert pending.password_required and pending.photos == []
        with pytest.raises(Unauthorized):
            shares.access_share(db, share.token, password="otra")
        assert len(shares.access_share(db, share.token, password="clave123").photos) == 1

    def test_expired_gone(self, db, event):
        """Expired shares answer 410"""
        share = shares.create_share(db, event.id, "event", expires_at=utcnow() + timedelta(hours=1))
        share.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        with pytest.raises(Gone):
            shares.access_share(db, share.token)

    def test_view_limit(self, db, event):
        """max_views is enforced"""
        share = shares.create_share(db, event.id, "event", max_views=1)
        shares.access_share(db, share.token)
        with pytest.raises(Forbidden):
            shares.access_share(db, share.token)

    def test_inactive_and_unknown(self, db, event):
        """Deactivated and unknown tokens are 404"""
        share = shares.create_share(db, event.id, "event")
        shares.deactivate_share(db, share.id)
        with pytest.raises(NotFound):
            shares.access_share(db, share.token)
        with pytest.raises(NotFound):
            shares.access_share(db, "x" * 32)
