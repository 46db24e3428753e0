# backend/app/services/orders.py
from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import Order, utcnow
from backend.app.services import audit

log = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "approved", "failed", "cancelled", "delivered")

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("approved", "failed", "cancelled"),
    "approved": ("delivered", "cancelled"),
    "failed": ("pending", "cancelled"),
    "delivered": (),
    "cancelled": (),
}

# exports and the old admin screens still speak the pre-2024 vocabulary
LEGACY_STATUS = {
    "pending": "pending_payment",
    "approved": "paid",
    "failed": "cancelled",
    "cancelled": "cancelled",
    "delivered": "delivered",
}

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, ())


def to_legacy_status(status: str) -> str:
    return LEGACY_STATUS.get(status, status)


def serialize(order: Order, with_items: bool = False) -> dict:
    out = {
        "id": order.id,
        "order_number": order.order_number,
        "event_id": order.event_id,
        "subject_id": order.subject_id,
        "contact_name": order.contact_name,
        "contact_email": order.contact_email,
        "contact_phone": order.contact_phone,
        "status": order.status,
        "legacy_status": to_legacy_status(order.status),
        "subtotal_cents": order.subtotal_cents,
        "discount_cents": order.discount_cents,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "coupon_id": order.coupon_id,
        "mp_preference_id": order.mp_preference_id,
        "mp_payment_id": order.mp_payment_id,
        "mp_status": order.mp_status,
        "approved_at": order.approved_at,
        "delivered_at": order.delivered_at,
        "tracking_number": order.tracking_number,
        "notes": order.notes,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }
    if with_items:
        out["items"] = [
            {
                "id": it.id,
                "photo_id": it.photo_id,
                "label": it.label,
                "quantity": it.quantity,
                "unit_price_cents": it.unit_price_cents,
                "subtotal_cents": it.subtotal_cents,
            }
            for it in order.items
        ]
        out["payments"] = [
            {
                "id": p.id,
                "mp_payment_id": p.mp_payment_id,
                "mp_status": p.mp_status,
                "mp_status_detail": p.mp_status_detail,
                "mp_payment_type": p.mp_payment_type,
                "amount_cents": p.amount_cents,
                "processed_at": p.processed_at,
            }
            for p in order.payments
        ]
    return out


def list_orders(
    db: Session,
    status: Optional[str] = None,
    event_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    if status and status not in ORDER_STATUSES:
        raise ValidationFailed("Estado de pedido inválido")
    if limit < 1 or limit > 100:
        raise ValidationFailed("limit debe estar entre 1 y 100")
    stmt = select(Order)
    if status:
        stmt = stmt.where(Order.status == status)
    if event_id:
        stmt = stmt.where(Order.event_id == event_id)
    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = db.scalars(stmt.order_by(Order.created_at.desc()).limit(limit).offset(offset))
    return {
        "orders": [serialize(o) for o in rows],
        "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total},
    }


def get_order(db: Session, id_or_number: str) -> Order:
    order = db.scalar(
        select(Order)
        .options(selectinload(Order.items), selectinload(Order.payments))
        .where(or_(Order.id == id_or_number, Order.order_number == id_or_number))
    )
    if order is None:
        raise NotFound("Pedido no encontrado")
    return order


def update_order(
    db: Session,
    id_or_number: str,
    status: Optional[str] = None,
    tracking_number: Optional[str] = None,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
    ip: Optional[str] = None,
) -> Order:
    order = get_order(db, id_or_number)
    changes: Dict[str, List[Optional[str]]] = {}

    if status is not None and status != order.status:
        if status not in ORDER_STATUSES:
            raise ValidationFailed("Estado de pedido inválido")
        if not can_transition(order.status, status):
            raise Conflict(
                f"No se puede cambiar el pedido de '{order.status}' a '{status}'",
                details={"allowed": list(ALLOWED_TRANSITIONS.get(order.status, ()))},
            )
        changes["status"] = [order.status, status]
        order.status = status
        if status == "approved" and order.approved_at is None:
            order.approved_at = utcnow()
        if status == "delivered":
            order.delivered_at = utcnow()

    if tracking_number is not None and tracking_number != order.tracking_number:
        changes["tracking_number"] = [order.tracking_number, tracking_number]
        order.tracking_number = tracking_number
    if notes is not None and notes != order.notes:
        changes["notes"] = [None, "updated"]
        order.notes = notes

    if changes:
        audit.log_action(db, "order.update", "order", order.id, actor=actor, details=changes, ip=ip)
        db.commit()
        log.info(f"[orders] {order.order_number} updated fields={sorted(changes)}")
    return order


def pending_order_for_subject(db: Session, subject_id: str) -> Optional[Order]:
    return db.scalar(
        select(Order).where(Order.subject_id == subject_id, Order.status == "pending").limit(1)
    )
