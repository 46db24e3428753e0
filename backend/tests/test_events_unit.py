from datetime import timedelta

import pytest
from sqlalchemy import func, select

from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import AuditLog, Photo, Subject, utcnow
from backend.app.services import audit, events, stats, store_settings


class TestEvents:
    def test_create_audits(self, db):
        """Creating an event writes an audit row"""
        event = events.create_event(db, "  Escuela Este  ", school="Este", actor="admin@x.com")
        assert event.name == "Escuela Este"
        rows = audit.recent(db, action="event.create")
        assert rows[0].resource_id == event.id
        assert rows[0].actor == "admin@x.com"

    def test_invalid_name_and_status(self, db):
        """Short names and unknown statuses are rejected"""
        with pytest.raises(ValidationFailed):
            events.create_event(db, "x")
        with pytest.raises(ValidationFailed):
            events.create_event(db, "Escuela", status="borrado")

    def test_update_only_known_fields(self, db, make_event):
        """Only name/school/date/status are written"""
        event = make_event()
        events.update_event(db, event.id, status="inactive", created_by="hacker")
        db.refresh(event)
        assert event.status == "inactive"
        assert event.created_by is None

    def test_list_with_stats(self, db, make_event, make_subject, make_photo):
        """Counts per event when requested"""
        event = make_event()
        make_subject(event)
        make_photo(event)
        make_event(name="Archivado", status="archived")

        listed = events.list_events(db, status="active", with_stats=True)

        assert [e["id"] for e in listed] == [event.id]
        assert listed[0]["stats"] == {"photos": 1, "subjects": 1, "orders": 0}

    def test_delete_cascades(self, db, make_event, make_subject, make_photo):
        """Deleting an event removes its subjects and photos"""
        event = make_event()
        make_subject(event)
        make_photo(event)
        events.delete_event(db, event.id)
        assert db.scalar(select(func.count(Subject.id))) == 0
        assert db.scalar(select(func.count(Photo.id))) == 0
        with pytest.raises(NotFound):
            events.get_event(db, event.id)

    def test_delete_with_orders_refused(self, db, make_event, make_subject, make_order):
        """Events with orders must be archived instead"""
        event = make_event()
        make_order(event, make_subject(event))
        with pytest.raises(Conflict):
            events.delete_event(db, event.id)


class TestPriceList:
    def test_default_created_once(self, db, make_event):
        """ensure_price_list creates the single base item and then reuses it"""
        event = make_event()
        first = events.ensure_price_list(db, event.id)
        db.commit()
        second = events.ensure_price_list(db, event.id)
        assert first.id == second.id
        assert [i.price_type for i in second.items] == ["base"]

    def test_replace(self, db, make_event):
        """Replacing swaps all items"""
        event = make_event()
        events.ensure_price_list(db, event.id)
        db.commit()
        pl = events.replace_price_list(
            db,
            event.id,
            [
                {"label": "Digital", "price_type": "base", "price_cents": 1500},
                {"label": "Impresa 13x18", "price_type": "print", "price_cents": 2500, "is_digital": False},
            ],
        )
        data = events.serialize_price_list(pl)
        assert [(i["price_type"], i["price_cents"]) for i in data["items"]] == [("base", 1500), ("print", 2500)]

    @pytest.mark.parametrize(
        "items",
        [
            [],
            [{"label": "a", "price_type": "base", "price_cents": 1}, {"label": "b", "price_type": "base", "price_cents": 2}],
            [{"label": "a", "price_type": "base", "price_cents": -1}],
        ],
    )
    def test_replace_invalid(self, db, make_event, items):
        """Empty, duplicated or negative lists are rejected"""
        event = make_event()
        with pytest.raises(ValidationFailed):
            events.replace_price_list(db, event.id, items)


class TestStoreSettings:
    def test_defaults_without_rows(self, db, make_event):
        """No rows means defaults"""
        data = store_settings.get_settings(db, make_event().id)
        assert data["id"] is None
        assert data["enabled"] is True

    def test_event_inherits_global(self, db, make_event):
        """An event without its own row inherits the global one"""
        event = make_event()
        store_settings.put_settings(db, {"welcome_message": "Hola", "currency": "usd"})
        data = store_settings.get_settings(db, event.id)
        assert data["inherited"] is True
        assert data["welcome_message"] == "Hola"
        assert data["currency"] == "USD"
        assert data["event_id"] == event.id

    def test_event_override(self, db, make_event):
        """Per-event rows win over the global row"""
        event = make_event()
        store_settings.put_settings(db, {"welcome_message": "Global"})
        store_settings.put_settings(db, {"welcome_message": "Evento"}, event_id=event.id)
        data = store_settings.get_settings(db, event.id)
        assert data["welcome_message"] == "Evento"
        assert "inherited" not in data

    def test_invalid_values(self, db, make_event):
        """Bad currency codes and unknown events are rejected"""
        with pytest.raises(ValidationFailed):
            store_settings.put_settings(db, {"currency": "PESOS"})
        with pytest.raises(NotFound):
            store_settings.put_settings(db, {}, event_id="missing")


class TestAuditAndStats:
    def test_cleanup_old_entries(self, db):
        """Entries past retention are deleted"""
        db.add(AuditLog(action="old", resource_type="x", created_at=utcnow() - timedelta(days=120)))
        audit.log_action(db, "new", "x")
        db.commit()

        assert audit.cleanup(db, 90) == 1
        assert [r.action for r in audit.recent(db)] == ["new"]

    def test_dashboard(self, db, make_event, make_subject, make_photo, make_order):
        """Revenue counts only approved and delivered orders"""
        event = make_event()
        subject = make_subject(event)
        make_photo(event)
        make_photo(event, approved=False)
        make_order(event, subject, status="approved", total_cents=1500)
        make_order(event, subject, status="pending", total_cents=900)

        data = stats.dashboard_stats(db)

        assert data["photos"] == {"total": 2, "approved": 1, "pending": 1}
        assert data["orders"]["total"] == 2
        assert data["orders"]["by_status"]["approved"] == 1
        assert data["revenue"] == {"total_cents": 1500, "total": 15.0}
