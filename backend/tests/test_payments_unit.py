from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select

from backend.app.db import SessionLocal
from backend.app.models import Coupon, CouponUsage, Payment
from backend.app.services import audit, coupons
from backend.app.services.mercadopago import MercadoPagoError
from backend.app.services.payments import process_payment_notification


@pytest.fixture
def order(make_event, make_subject, make_photo, make_order):
    event = make_event()
    subject = make_subject(event)
    return make_order(event, subject, photo=make_photo(event, subject=subject))


def _fetch(order_id, status="approved", amount=10.0):
    return Mock(
        return_value={
            "id": 555,
            "status": status,
            "status_detail": "accredited",
            "external_reference": order_id,
            "transaction_amount": amount,
            "payment_type_id": "credit_card",
        }
    )


def _payments(db):
    return db.scalar(select(func.count(Payment.id)))


class TestProcessPaymentNotification:
    def test_approved_payment_updates_order(self, db, order):
        """Approved payment flips the order and stores a payment row"""
        outcome = process_payment_notification(db, "555", fetch_payment=_fetch(order.id))

        assert outcome.success and not outcome.duplicate
        assert outcome.status == "approved"
        db.refresh(order)
        assert order.status == "approved"
        assert order.mp_payment_id == "555"
        assert order.approved_at is not None
        payment = db.scalar(select(Payment))
        assert payment.amount_cents == 1000
        assert payment.mp_status_detail == "accredited"

    def test_same_payment_twice_is_duplicate(self, db, order):
        """A repeated notification changes nothing"""
        fetch = _fetch(order.id)
        process_payment_notification(db, "555", fetch_payment=fetch)
        outcome = process_payment_notification(db, "555", fetch_payment=fetch)

        assert outcome.success and outcome.duplicate
        assert _payments(db) == 1

    def test_approved_order_not_downgraded(self, db, order):
        """A later rejected payment is recorded but the order stays approved"""
        process_payment_notification(db, "555", fetch_payment=_fetch(order.id))
        outcome = process_payment_notification(db, "556", fetch_payment=_fetch(order.id, status="rejected"))

        assert outcome.success
        assert outcome.status == "approved"
        db.refresh(order)
        assert order.status == "approved"
        assert order.mp_payment_id == "555"
        assert _payments(db) == 2

    def test_delivered_order_is_final(self, db, make_event, make_subject, make_photo, make_order):
        """A delivered order ignores later notifications but keeps their payment rows"""
        event = make_event()
        subject = make_subject(event)
        delivered = make_order(event, subject, photo=make_photo(event, subject=subject), status="delivered")

        outcome = process_payment_notification(db, "777", fetch_payment=_fetch(delivered.id, status="pending"))

        assert outcome.success
        assert outcome.status == "delivered"
        db.refresh(delivered)
        assert delivered.status == "delivered"
        assert delivered.mp_payment_id is None
        assert db.scalar(select(Payment.mp_status).where(Payment.mp_payment_id == "777")) == "pending"

    def test_cancelled_order_not_revived(self, db, make_event, make_subject, make_order):
        """An approved payment for a cancelled order does not reopen it"""
        event = make_event()
        cancelled = make_order(event, make_subject(event), status="cancelled")

        outcome = process_payment_notification(db, "778", fetch_payment=_fetch(cancelled.id))

        assert outcome.status == "cancelled"
        db.refresh(cancelled)
        assert cancelled.status == "cancelled"
        assert cancelled.approved_at is None
        assert _payments(db) == 1

    def test_concurrent_duplicate_hits_unique_constraint(self, db, order):
        """A payment committed by another worker mid-flight ends as a duplicate"""
        original = audit.log_action

        def _other_worker_commits(*args, **kwargs):
            entry = original(*args, **kwargs)
            other = SessionLocal()
            try:
                other.add(Payment(order_id=order.id, mp_payment_id="555", amount_cents=1000, mp_status="approved"))
                other.commit()
            finally:
                other.close()
            return entry

        with patch.object(audit, "log_action", side_effect=_other_worker_commits):
            outcome = process_payment_notification(db, "555", fetch_payment=_fetch(order.id))

        assert outcome.success and outcome.duplicate
        assert outcome.message == "Pago ya procesado (concurrente)"
        db.expire_all()
        assert db.get(type(order), order.id).status == "pending"
        assert _payments(db) == 1

    def test_rejected_payment_fails_pending_order(self, db, order):
        """rejected maps to failed on a pending order"""
        outcome = process_payment_notification(db, "557", fetch_payment=_fetch(order.id, status="rejected"))
        assert outcome.status == "failed"
        db.refresh(order)
        assert order.status == "failed"
        assert order.approved_at is None

    def test_missing_reference_and_unknown_order(self, db):
        """Payments that point nowhere are not processed"""
        no_ref = Mock(return_value={"id": 1, "status": "approved"})
        assert not process_payment_notification(db, "1", fetch_payment=no_ref).success
        assert not process_payment_notification(db, "2", fetch_payment=_fetch("missing-order")).success
        assert _payments(db) == 0

    def test_coupon_applied_on_approval(self, db, make_event, make_subject, make_order):
        """Approval records coupon usage exactly once"""
        coupon = coupons.create_coupon(db, code="PROMO", type="percentage", value=10)
        event = make_event()
        order = make_order(event, make_subject(event), coupon_id=coupon.id, discount_cents=100, total_cents=900)

        process_payment_notification(db, "600", fetch_payment=_fetch(order.id, amount=9.0))
        process_payment_notification(db, "600", fetch_payment=_fetch(order.id, amount=9.0))

        assert db.scalar(select(func.count(CouponUsage.id))) == 1
        db.expire_all()
        assert db.get(Coupon, coupon.id).uses_count == 1

    def test_gateway_error_propagates(self, db, order):
        """Fetch failures surface to the caller"""
        fetch = Mock(side_effect=MercadoPagoError("down", status=503))
        with pytest.raises(MercadoPagoError):
            process_payment_notification(db, "555", fetch_payment=fetch)
