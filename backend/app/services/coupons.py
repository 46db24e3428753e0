# backend/app/services/coupons.py
"""
Discount coupons.

``value`` is a percentage (0-100) for ``percentage`` coupons and an amount in
pesos for ``fixed`` ones; every computed discount is in cents.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from backend.app.errors import Conflict, NotFound, ValidationFailed
from backend.app.models import Coupon, CouponUsage, Order, as_utc, utcnow

log = logging.getLogger(__name__)

COUPON_TYPES = ("percentage", "fixed", "free_shipping")
_CODE_RE = re.compile(r"^[A-Z0-9_-]{3,20}$")


@dataclass
class CouponCheck:
    valid: bool
    discount_cents: int = 0
    coupon: Optional[Coupon] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {
            "valid": self.valid,
            "discount_cents": self.discount_cents,
            "discount_formatted": format_currency(self.discount_cents),
        }
        if self.coupon is not None:
            out["coupon"] = {"id": self.coupon.id, "code": self.coupon.code, "type": self.coupon.type}
        if self.error:
            out["error"] = self.error
            out["error_code"] = self.error_code
        return out


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def format_currency(cents: int) -> str:
    pesos = cents / 100
    text = f"{pesos:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    if text.endswith(",00"):
        text = text[:-3]
    return f"${text}"


def compute_discount(coupon: Coupon, subtotal_cents: int) -> int:
    if coupon.type == "percentage":
        discount = math.floor(subtotal_cents * (coupon.value / 100))
    elif coupon.type == "fixed":
        discount = math.floor(coupon.value * 100)
    else:
        # free_shipping: shipping is priced outside the order subtotal
        discount = 0
    if coupon.max_discount_cents is not None and discount > coupon.max_discount_cents:
        discount = coupon.max_discount_cents
    return max(0, min(discount, subtotal_cents))


def _fail(code: str, message: str) -> CouponCheck:
    return CouponCheck(False, error=message, error_code=code)


def validate_coupon(
    db: Session,
    code: str,
    subtotal_cents: int,
    *,
    user_identifier: Optional[str] = None,
    has_digital: bool = True,
    has_physical: bool = False,
    now: Optional[datetime] = None,
) -> CouponCheck:
    now = now or utcnow()
    normalized = normalize_code(code)
    coupon = db.scalar(select(Coupon).where(Coupon.code == normalized, Coupon.is_active.is_(True)))
    if coupon is None:
        return _fail("NOT_FOUND", "Cupón no válido")

    valid_from = as_utc(coupon.valid_from)
    if valid_from and valid_from > now:
        return _fail("NOT_STARTED", "Este cupón aún no está activo")
    expires_at = as_utc(coupon.expires_at)
    if expires_at and expires_at < now:
        return _fail("EXPIRED", "Este cupón ha expirado")
    if coupon.max_uses is not None and coupon.uses_count >= coupon.max_uses:
        return _fail("MAX_USES_REACHED", "Este cupón ya fue usado el máximo de veces")
    if has_digital and not coupon.applies_to_digital:
        return _fail("NOT_FOR_DIGITAL", "Este cupón no aplica a productos digitales")
    if has_physical and not coupon.applies_to_physical:
        return _fail("NOT_FOR_PHYSICAL", "Este cupón no aplica a productos físicos")
    if subtotal_cents < (coupon.min_purchase_cents or 0):
        return _fail(
            "MIN_PURCHASE_NOT_MET", f"Compra mínima requerida: {format_currency(coupon.min_purchase_cents)}"
        )
    if user_identifier and coupon.max_uses_per_user:
        used = (
            db.scalar(
                select(func.count(CouponUsage.id)).where(
                    CouponUsage.coupon_id == coupon.id,
                    CouponUsage.user_identifier == user_identifier.lower(),
                )
            )
            or 0
        )
        if used >= coupon.max_uses_per_user:
            return _fail("USER_MAX_USES_REACHED", "Ya usaste este cupón el máximo de veces permitido")

    discount = compute_discount(coupon, subtotal_cents)
    log.info(f"[coupons] validated code={normalized} discount_cents={discount}")
    return CouponCheck(True, discount_cents=discount, coupon=coupon)


def apply_coupon(
    db: Session,
    coupon_id: str,
    order_id: str,
    discount_cents: int,
    user_identifier: Optional[str] = None,
) -> bool:
    """
    Record usage for a paid order. Applying twice for the same order is a
    no-op (unique coupon_id+order_id). Does not commit.
    """
    exists = db.scalar(
        select(CouponUsage.id).where(CouponUsage.coupon_id == coupon_id, CouponUsage.order_id == order_id)
    )
    if exists:
        return False
    coupon = db.get(Coupon, coupon_id)
    if coupon is None:
        return False
    db.add(
        CouponUsage(
            coupon_id=coupon_id,
            order_id=order_id,
            user_identifier=user_identifier.lower() if user_identifier else None,
            discount_applied_cents=discount_cents,
        )
    )
    coupon.uses_count = (coupon.uses_count or 0) + 1
    return True


# --- admin CRUD --------------------------------------------------------------
def serialize(coupon: Coupon) -> dict:
    return {
        "id": coupon.id,
        "code": coupon.code,
        "type": coupon.type,
        "value": coupon.value,
        "min_purchase_cents": coupon.min_purchase_cents,
        "max_discount_cents": coupon.max_discount_cents,
        "max_uses": coupon.max_uses,
        "uses_count": coupon.uses_count,
        "max_uses_per_user": coupon.max_uses_per_user,
        "valid_from": coupon.valid_from,
        "expires_at": coupon.expires_at,
        "is_active": coupon.is_active,
        "description": coupon.description,
        "applies_to_digital": coupon.applies_to_digital,
        "applies_to_physical": coupon.applies_to_physical,
        "created_at": coupon.created_at,
    }


def _check_value(ctype: str, value: float) -> None:
    if ctype not in COUPON_TYPES:
        raise ValidationFailed("Tipo de cupón inválido")
    if ctype == "percentage" and not 0 <= value <= 100:
        raise ValidationFailed("El porcentaje debe estar entre 0 y 100")
    if ctype == "fixed" and value < 0:
        raise ValidationFailed("El valor debe ser positivo")


def create_coupon(db: Session, **fields: Any) -> Coupon:
    code = normalize_code(fields.pop("code", ""))
    if not _CODE_RE.match(code):
        raise ValidationFailed("El código debe tener entre 3 y 20 caracteres alfanuméricos")
    if db.scalar(select(Coupon.id).where(Coupon.code == code)):
        raise Conflict("Ya existe un cupón con ese código")
    _check_value(fields.get("type", ""), float(fields.get("value", 0) or 0))
    coupon = Coupon(code=code, **{k: v for k, v in fields.items() if v is not None})
    db.add(coupon)
    db.commit()
    return coupon


def list_coupons(db: Session, active_only: bool = False) -> List[Coupon]:
    stmt = select(Coupon).order_by(Coupon.created_at.desc())
    if active_only:
        stmt = stmt.where(Coupon.is_active.is_(True))
    return list(db.scalars(stmt))


def get_coupon(db: Session, coupon_id: str) -> Coupon:
    coupon = db.get(Coupon, coupon_id)
    if coupon is None:
        raise NotFound("Cupón no encontrado")
    return coupon


def update_coupon(db: Session, coupon_id: str, **updates: Any) -> Coupon:
    coupon = get_coupon(db, coupon_id)
    ctype = updates.get("type") or coupon.type
    value = updates.get("value")
    _check_value(ctype, float(value if value is not None else coupon.value))
    for key, val in updates.items():
        if key in ("id", "code", "uses_count", "created_at"):
            continue
        setattr(coupon, key, val)
    db.commit()
    return coupon


def delete_coupon(db: Session, coupon_id: str) -> None:
    coupon = get_coupon(db, coupon_id)
    used = db.scalar(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id)) or 0
    used += db.scalar(select(func.count(Order.id)).where(Order.coupon_id == coupon_id)) or 0
    if used:
        # keep history: used coupons are only deactivated
        coupon.is_active = False
    else:
        db.delete(coupon)
    db.commit()
