# backend/app/routers/family.py
"""
Routes reached without an admin session: the family gallery and store behind
a subject token, checkout, coupon preview and the public share gallery.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from backend.app.config import settings
from backend.app.db import get_db
from backend.app.errors import Unauthorized
from backend.app.limiter import limiter
from backend.app.models import Event, Subject
from backend.app.schema.checkout_schema import CheckoutRequest, CouponValidateRequest
from backend.app.services import checkout, coupons, events, photos, shares, store_settings
from backend.app.services.checkout import CartItem, Contact
from backend.app.services.tokens import TokenValidation, token_service
from backend.app.utils.security import mask_token

logger = logging.getLogger(__name__)

router = APIRouter()


def _validated(db: Session, token: str) -> TokenValidation:
    check = token_service.validate_token(db, token)
    if not check.valid:
        logger.info(f"[family] token rejected {mask_token(token)} reason={check.reason}")
        raise Unauthorized("Token inválido o expirado", code=check.reason)
    return check


@router.get("/api/family/gallery/{token}")
@limiter.limit(settings.RATE_LIMIT_GALLERY)
def family_gallery(
    request: Request,
    token: str,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    check = _validated(db, token)
    subject = db.get(Subject, check.subject_id)
    event = db.get(Event, check.event_id)

    page = photos.list_photos(db, subject_id=subject.id, approved=True, limit=limit, offset=offset)
    urls = photos.signed_urls(db, [p["id"] for p in page["photos"]]) if page["photos"] else {}
    for p in page["photos"]:
        p["preview_url"] = urls.get(p["id"])

    return {
        "ok": True,
        "subject": {"id": subject.id, "name": subject.name, "grade": subject.grade},
        "event": events.serialize(event),
        "token": check.to_dict(),
        **page,
    }


@router.get("/api/store/{token}")
@limiter.limit(settings.RATE_LIMIT_GALLERY)
def store(request: Request, token: str, db: Session = Depends(get_db)):
    check = _validated(db, token)
    event = db.get(Event, check.event_id)
    price_list = events.ensure_price_list(db, event.id)
    db.commit()
    return {
        "ok": True,
        "event": events.serialize(event),
        "settings": store_settings.get_settings(db, event.id),
        "price_list": events.serialize_price_list(price_list),
    }


@router.post("/api/family/checkout")
@limiter.limit(settings.RATE_LIMIT_CHECKOUT)
def family_checkout(request: Request, body: CheckoutRequest, db: Session = Depends(get_db)):
    contact = Contact(name=body.contact_info.name, email=body.contact_info.email, phone=body.contact_info.phone)
    items = [CartItem(photo_id=str(i.photo_id), quantity=i.quantity, price_type=i.price_type) for i in body.items]
    result = checkout.create_checkout(db, body.token, contact, items, coupon_code=body.coupon_code)
    return {"ok": True, **result}


@router.post("/api/store/coupons/validate")
@limiter.limit(settings.RATE_LIMIT_PUBLIC)
def validate_coupon(request: Request, body: CouponValidateRequest, db: Session = Depends(get_db)):
    result = coupons.validate_coupon(db, body.code, body.subtotal_cents, user_identifier=body.email)
    return {"ok": result.valid, **result.to_dict()}


@router.get("/api/public/gallery/{token}")
@limiter.limit(settings.RATE_LIMIT_PUBLIC)
def public_gallery(
    request: Request,
    token: str,
    password: Optional[str] = None,
    x_share_password: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    access = shares.access_share(db, token, password=x_share_password or password)
    if access.password_required:
        return {"ok": False, "password_required": True, "title": access.share.title}
    share = access.share
    return {
        "ok": True,
        "share": {
            "title": share.title,
            "description": share.description,
            "share_type": share.share_type,
            "allow_download": share.allow_download,
            "view_count": share.view_count,
        },
        "event": {"id": access.event.id, "name": access.event.name, "school": access.event.school},
        "folder": {"id": access.folder.id, "name": access.folder.name} if access.folder else None,
        "photos": access.photos,
    }
