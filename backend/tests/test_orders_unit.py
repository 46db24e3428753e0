import re

import pytest
from sqlalchemy import select

from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import AuditLog
from backend.app.services import orders


@pytest.fixture
def order(make_event, make_subject, make_photo, make_order):
    event = make_event()
    subject = make_subject(event)
    return make_order(event, subject, photo=make_photo(event, subject=subject))


class TestOrderHelpers:
    def test_order_number_format(self):
        """ORD-<millis>-<6 chars>"""
        assert re.match(r"^ORD-\d{13}-[A-Z0-9]{6}$", orders.generate_order_number())

    @pytest.mark.parametrize(
        "current,new,ok",
        [
            ("pending", "approved", True),
            ("pending", "delivered", False),
            ("approved", "delivered", True),
            ("approved", "pending", False),
            ("failed", "pending", True),
            ("delivered", "cancelled", False),
            ("cancelled", "pending", False),
        ],
    )
    def test_transitions(self, current, new, ok):
        """Transition table is enforced"""
        assert orders.can_transition(current, new) is ok

    def test_legacy_mapping(self):
        """Old vocabulary for exports"""
        assert orders.to_legacy_status("pending") == "pending_payment"
        assert orders.to_legacy_status("approved") == "paid"
        assert orders.to_legacy_status("failed") == "cancelled"


class TestOrderQueries:
    def test_get_by_id_or_number(self, db, order):
        """Orders resolve by id and by order number"""
        assert orders.get_order(db, order.id).id == order.id
        assert orders.get_order(db, order.order_number).id == order.id
        with pytest.raises(NotFound):
            orders.get_order(db, "nope")

    def test_list_filters(self, db, order):
        """Status filter and pagination metadata"""
        result = orders.list_orders(db, status="pending")
        assert result["pagination"]["total"] == 1
        assert orders.list_orders(db, status="approved")["orders"] == []
        with pytest.raises(ValidationFailed):
            orders.list_orders(db, status="paid")

    def test_serialize_with_items(self, db, order):
        """Detail view carries items and payments"""
        data = orders.serialize(orders.get_order(db, order.id), with_items=True)
        assert len(data["items"]) == 1
        assert data["payments"] == []
        assert data["legacy_status"] == "pending_payment"


class TestUpdateOrder:
    def test_valid_transition_audited(self, db, order):
        """pending -> approved stamps approved_at and writes audit"""
        updated = orders.update_order(db, order.id, status="approved", actor="admin@example.com")
        assert updated.status == "approved"
        assert updated.approved_at is not None
        entry = db.scalar(select(AuditLog).where(AuditLog.action == "order.update"))
        assert entry.details["status"] == ["pending", "approved"]

    def test_invalid_transition_conflict(self, db, order):
        """pending -> delivered is refused with the allowed list"""
        with pytest.raises(Conflict) as exc:
            orders.update_order(db, order.id, status="delivered")
        assert exc.value.details == {"allowed": ["approved", "failed", "cancelled"]}

    def test_terminal_state(self, db, order):
        """Delivered orders cannot change status"""
        orders.update_order(db, order.id, status="approved")
        orders.update_order(db, order.id, status="delivered", tracking_number="AR123")
        with pytest.raises(Conflict):
            orders.update_order(db, order.id, status="cancelled")

    def test_tracking_and_notes(self, db, order):
        """Non-status fields update without a transition"""
        updated = orders.update_order(db, order.order_number, tracking_number="TRK-1", notes="entregar en sala")
        assert updated.tracking_number == "TRK-1"
        assert updated.notes == "entregar en sala"
