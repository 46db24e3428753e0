# backend/app/services/payments.py
"""
Mercado Pago payment notifications.

Idempotency is layered: the payments row (UNIQUE mp_payment_id) is the
primary guard, the order's own mp_payment_id a backup, and a unique-violation
on insert (two deliveries racing) is read as "already processed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import Order, Payment, utcnow
from backend.app.services import audit, coupons
from backend.app.services import mercadopago as mp
from backend.app.telemetry import telemetry
from backend.app.utils.security import mask_id

log = logging.getLogger(__name__)

# past payment: later notifications are recorded but never move the order
TERMINAL_STATUSES = ("delivered", "cancelled")


@dataclass
class WebhookOutcome:
    success: bool
    message: str
    duplicate: bool = False
    order_id: Optional[str] = None
    status: Optional[str] = None


def _webhook_snapshot(info: Dict[str, Any]) -> Dict[str, Any]:
    keys = (
        "collector_id",
        "operation_type",
        "payment_method_id",
        "payment_type_id",
        "status_detail",
        "transaction_amount",
        "installments",
    )
    snap = {k: info.get(k) for k in keys}
    snap["processed_at"] = utcnow().isoformat()
    return snap


def process_payment_notification(
    db: Session,
    payment_id: str,
    fetch_payment: Optional[Callable[[str], Dict[str, Any]]] = None,
) -> WebhookOutcome:
    """
    Apply one payment notification. Gateway errors propagate
    (MercadoPagoError); everything else comes back as a WebhookOutcome.
    """
    fetch_payment = fetch_payment or mp.get_payment
    payment_id = str(payment_id)
    info = fetch_payment(payment_id)

    order_id = info.get("external_reference")
    if not order_id:
        return WebhookOutcome(False, "External reference faltante en pago MP")

    mp_status = str(info.get("status") or "")
    internal = mp.map_status(mp_status)
    amount_cents = int(round(float(info.get("transaction_amount") or 0) * 100))

    log.info(
        f"[payments] notification payment={mask_id(payment_id)} order={mask_id(order_id)} "
        f"mp_status={mp_status} internal={internal}"
    )

    if db.scalar(select(Payment.id).where(Payment.mp_payment_id == payment_id)):
        telemetry.increment("webhooks_duplicate")
        return WebhookOutcome(True, "Pago ya procesado anteriormente", duplicate=True, order_id=order_id)

    order = db.get(Order, order_id)
    if order is None:
        log.warning(f"[payments] order not found for reference={mask_id(order_id)}")
        return WebhookOutcome(False, "Orden no encontrada", order_id=order_id)

    if order.mp_payment_id == payment_id:
        telemetry.increment("webhooks_duplicate")
        return WebhookOutcome(
            True, "Pago ya procesado anteriormente en la orden", duplicate=True, order_id=order_id
        )

    previous = order.status
    db.add(
        Payment(
            order_id=order.id,
            mp_payment_id=payment_id,
            mp_preference_id=info.get("preference_id") or order.mp_preference_id,
            mp_external_reference=order_id,
            mp_status=mp_status,
            mp_status_detail=info.get("status_detail"),
            mp_payment_type=info.get("payment_type_id"),
            amount_cents=amount_cents,
            processed_at=utcnow() if internal == "approved" else None,
            webhook_data=_webhook_snapshot(info),
        )
    )

    locked = previous in TERMINAL_STATUSES or (previous == "approved" and internal != "approved")
    if locked:
        # the payment row still records what MP said
        log.warning(
            f"[payments] ignoring change of {previous} order={mask_id(order_id)} to {internal} "
            f"(payment={mask_id(payment_id)})"
        )
        new_status = previous
    else:
        new_status = internal
        order.mp_payment_id = payment_id
        order.mp_status = mp_status
        order.status = internal
        if internal == "approved" and order.approved_at is None:
            order.approved_at = utcnow()
            if order.coupon_id:
                coupons.apply_coupon(
                    db, order.coupon_id, order.id, order.discount_cents, user_identifier=order.contact_email
                )

    audit.log_action(
        db,
        "payment.webhook",
        "order",
        order.id,
        actor="mercadopago",
        details={"payment": mask_id(payment_id), "from": previous, "to": new_status, "mp_status": mp_status},
    )

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        telemetry.increment("webhooks_duplicate")
        log.info(f"[payments] concurrent duplicate payment={mask_id(payment_id)}")
        return WebhookOutcome(True, "Pago ya procesado (concurrente)", duplicate=True, order_id=order_id)

    telemetry.log_json(
        "payment_processed",
        payment=mask_id(payment_id),
        order=mask_id(order_id),
        old_status=previous,
        new_status=new_status,
        amount_cents=amount_cents,
    )
    return WebhookOutcome(
        True, f"Orden {order_id[:8]} actualizada: {previous} -> {new_status}", order_id=order_id, status=new_status
    )
