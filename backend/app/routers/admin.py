# backend/app/routers/admin.py
"""Admin back-office: identity, orders, coupons, share links, store settings, stats."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.dependencies.auth import AdminIdentity, require_admin
from backend.app.limiter import client_key
from backend.app.schema.admin_schema import (
    CouponCreate,
    CouponUpdate,
    OrderUpdate,
    ShareCreate,
    StoreSettingsIn,
)
from backend.app.services import audit, coupons, orders, shares, stats, store_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _actor(admin: AdminIdentity) -> str:
    return admin.email or admin.id


@router.get("/api/admin/auth/me")
def me(admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "admin": admin.to_dict()}


# --- orders -------------------------------------------------------------------
@router.get("/api/admin/orders")
def list_orders(
    status: Optional[str] = None,
    event_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    result = orders.list_orders(db, status=status, event_id=event_id, limit=limit, offset=offset)
    return {"ok": True, **result}


@router.get("/api/admin/orders/{order_id}")
def get_order(order_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "order": orders.serialize(orders.get_order(db, order_id), with_items=True)}


@router.patch("/api/admin/orders/{order_id}")
def update_order(
    order_id: str,
    body: OrderUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    order = orders.update_order(
        db,
        order_id,
        status=body.status,
        tracking_number=body.tracking_number,
        notes=body.notes,
        actor=_actor(admin),
        ip=client_key(request),
    )
    return {"ok": True, "order": orders.serialize(order, with_items=True)}


# --- coupons ------------------------------------------------------------------
@router.get("/api/admin/coupons")
def list_coupons(
    active_only: bool = False, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    return {"ok": True, "coupons": [coupons.serialize(c) for c in coupons.list_coupons(db, active_only)]}


@router.post("/api/admin/coupons", status_code=201)
def create_coupon(body: CouponCreate, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    coupon = coupons.create_coupon(db, **body.model_dump())
    logger.info(f"[admin] coupon created code={coupon.code}")
    return {"ok": True, "coupon": coupons.serialize(coupon)}


@router.get("/api/admin/coupons/{coupon_id}")
def get_coupon(coupon_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    return {"ok": True, "coupon": coupons.serialize(coupons.get_coupon(db, coupon_id))}


@router.patch("/api/admin/coupons/{coupon_id}")
def update_coupon(
    coupon_id: str,
    body: CouponUpdate,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    coupon = coupons.update_coupon(db, coupon_id, **body.model_dump(exclude_unset=True))
    return {"ok": True, "coupon": coupons.serialize(coupon)}


@router.delete("/api/admin/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)):
    coupons.delete_coupon(db, coupon_id)
    return {"ok": True, "deleted": coupon_id}


# --- shares -------------------------------------------------------------------
@router.post("/api/admin/shares", status_code=201)
def create_share(body: ShareCreate, db: Session = Depends(get_db), admin: AdminIdentity = Depends(require_admin)):
    share = shares.create_share(db, actor=_actor(admin), **body.model_dump())
    return {"ok": True, "share": shares.serialize(share)}


@router.delete("/api/admin/shares/{share_id}")
def deactivate_share(share_id: str, db: Session = Depends(get_db), admin: AdminIdentity = Depends(require_admin)):
    share = shares.deactivate_share(db, share_id, actor=_actor(admin))
    return {"ok": True, "share": shares.serialize(share)}


# --- store settings -----------------------------------------------------------
@router.get("/api/admin/settings/store")
def get_store_settings(
    event_id: Optional[str] = None, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    return {"ok": True, "settings": store_settings.get_settings(db, event_id)}


@router.put("/api/admin/settings/store")
def put_store_settings(
    body: StoreSettingsIn, db: Session = Depends(get_db), admin: AdminIdentity = Depends(require_admin)
):
    values = body.model_dump(exclude={"event_id"}, exclude_unset=True)
    result = store_settings.put_settings(db, values, event_id=body.event_id, actor=_actor(admin))
    return {"ok": True, "settings": result}


# --- stats / audit --------------------------------------------------------------
@router.get("/api/admin/stats")
def dashboard(
    event_id: Optional[str] = None, db: Session = Depends(get_db), _admin: AdminIdentity = Depends(require_admin)
):
    return {"ok": True, "stats": stats.dashboard_stats(db, event_id)}


@router.get("/api/admin/audit")
def audit_log(
    limit: int = 50,
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    db: Session = Depends(get_db),
    _admin: AdminIdentity = Depends(require_admin),
):
    rows = audit.recent(db, limit=limit, action=action, resource_type=resource_type)
    return {
        "ok": True,
        "entries": [
            {
                "id": r.id,
                "action": r.action,
                "resource_type": r.resource_type,
                "resource_id": r.resource_id,
                "actor": r.actor,
                "severity": r.severity,
                "details": r.details,
                "created_at": r.created_at,
            }
            for r in rows
        ],
    }
