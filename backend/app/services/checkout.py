# backend/app/services/checkout.py
"""
Family checkout: subject token + cart -> pending order + Mercado Pago preference.

Money stays in integer cents everywhere except the preference payload, where
Mercado Pago wants pesos with two decimals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.errors import Conflict, Forbidden, Unauthorized, ValidationFailed
from backend.app.models import Event, Order, OrderItem, Photo, PhotoSubject, Subject
from backend.app.services import coupons, events, orders
from backend.app.services import mercadopago as mp
from backend.app.services.tokens import token_service
from backend.app.telemetry import telemetry
from backend.app.utils.security import mask_id, mask_token

log = logging.getLogger(__name__)


@dataclass
class CartItem:
    photo_id: str
    quantity: int
    price_type: str = "base"


@dataclass
class Contact:
    name: str
    email: str
    phone: Optional[str] = None


def cents_to_pesos(cents: int) -> float:
    return round(cents / 100, 2)


def create_checkout(
    db: Session,
    token: str,
    contact: Contact,
    items: List[CartItem],
    coupon_code: Optional[str] = None,
    create_preference=None,
) -> dict:
    create_preference = create_preference or mp.create_preference
    telemetry.increment("checkouts_total")

    # 1. token
    check = token_service.validate_token(db, token)
    if not check.valid:
        telemetry.increment("checkouts_failed")
        log.info(f"[checkout] rejected token={mask_token(token)} reason={check.reason}")
        raise Unauthorized("Token inválido o expirado", code=check.reason)

    subject = db.get(Subject, check.subject_id)
    event = db.get(Event, subject.event_id)

    # 2. event open for purchases
    if not event.is_active:
        telemetry.increment("checkouts_failed")
        raise Forbidden("El evento no está habilitado para compras")

    # 3. one pending order per subject
    if orders.pending_order_for_subject(db, subject.id) is not None:
        telemetry.increment("checkouts_failed")
        raise Conflict("Ya existe un pedido pendiente para este alumno; complete o cancele el pago anterior")

    # 4. photos tagged to this subject and approved
    photo_ids = list(dict.fromkeys(it.photo_id for it in items))
    allowed: Dict[str, Photo] = {
        p.id: p
        for p in db.scalars(
            select(Photo)
            .join(PhotoSubject, PhotoSubject.photo_id == Photo.id)
            .where(
                PhotoSubject.subject_id == subject.id,
                Photo.id.in_(photo_ids),
                Photo.approved.is_(True),
            )
        )
    }
    if len(allowed) != len(photo_ids):
        telemetry.increment("checkouts_failed")
        raise Forbidden("Algunas fotos no pertenecen a este alumno")

    # 5. prices
    price_list = events.ensure_price_list(db, event.id)
    prices = {it.price_type: it for it in price_list.items}

    lines = []
    subtotal = 0
    for it in items:
        price = prices.get(it.price_type)
        if price is None:
            telemetry.increment("checkouts_failed")
            raise ValidationFailed(f"Tipo de precio inválido: {it.price_type}")
        line_total = price.price_cents * it.quantity
        subtotal += line_total
        lines.append((it, price, line_total))

    # 6. coupon
    discount = 0
    coupon_id = None
    if coupon_code:
        has_physical = any(not price.is_digital for _, price, _ in lines)
        has_digital = any(price.is_digital for _, price, _ in lines)
        result = coupons.validate_coupon(
            db,
            coupon_code,
            subtotal,
            user_identifier=contact.email,
            has_digital=has_digital,
            has_physical=has_physical,
        )
        if not result.valid:
            telemetry.increment("checkouts_failed")
            raise ValidationFailed(result.error, code=result.error_code)
        discount = result.discount_cents
        coupon_id = result.coupon.id
    total = subtotal - discount
    if total <= 0:
        # Checkout Pro cannot charge zero; fully discounted orders go through admin
        telemetry.increment("checkouts_failed")
        raise ValidationFailed("El total del pedido debe ser mayor a cero")

    # 7. order + items, one transaction
    order = Order(
        order_number=orders.generate_order_number(),
        event_id=event.id,
        subject_id=subject.id,
        contact_name=contact.name.strip(),
        contact_email=contact.email.strip().lower(),
        contact_phone=contact.phone,
        status="pending",
        subtotal_cents=subtotal,
        discount_cents=discount,
        total_cents=total,
        currency=settings.CURRENCY,
        coupon_id=coupon_id,
    )
    for it, price, line_total in lines:
        order.items.append(
            OrderItem(
                photo_id=it.photo_id,
                price_list_item_id=price.id,
                label=price.label,
                quantity=it.quantity,
                unit_price_cents=price.price_cents,
                subtotal_cents=line_total,
            )
        )
    db.add(order)
    db.commit()

    # 8. preference
    if discount:
        mp_items = [{"title": f"Pedido {order.order_number}", "quantity": 1, "unit_price": cents_to_pesos(total)}]
    else:
        mp_items = [
            {
                "title": f"{price.label} - {allowed[it.photo_id].original_filename}",
                "quantity": it.quantity,
                "unit_price": cents_to_pesos(price.price_cents),
            }
            for it, price, _ in lines
        ]
    payer = {"name": contact.name, "email": contact.email, "phone": {"number": contact.phone} if contact.phone else None}

    try:
        preference = create_preference(order.id, mp_items, payer)
    except mp.MercadoPagoError:
        order.status = "failed"
        order.notes = "No se pudo crear la preferencia de pago"
        db.commit()
        telemetry.increment("checkouts_failed")
        telemetry.set_error(f"preference failed for order {mask_id(order.id)}")
        raise

    order.mp_preference_id = preference.id
    db.commit()

    telemetry.log_json(
        "checkout_created",
        order=mask_id(order.id),
        total_cents=total,
        discount_cents=discount,
        items=len(lines),
    )
    log.info(f"[checkout] order={order.order_number} total_cents={total} items={len(lines)}")

    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "preference_id": preference.id,
        "redirect_url": preference.redirect_url(settings.is_production),
        "total": cents_to_pesos(total),
        "total_cents": total,
        "subtotal_cents": subtotal,
        "discount_cents": discount,
        "currency": settings.CURRENCY,
        "items": [
            {
                **mi,
                "unit_price_formatted": coupons.format_currency(int(round(mi["unit_price"] * 100))),
            }
            for mi in mp_items
        ],
        "event": {"name": event.name, "school": event.school},
    }
