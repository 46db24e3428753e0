from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

EventStatus = Literal["active", "inactive", "archived"]
OrderStatus = Literal["pending", "approved", "failed", "cancelled", "delivered"]
CouponType = Literal["percentage", "fixed", "free_shipping"]
ShareType = Literal["event", "folder", "photos"]


# --- events / subjects / prices -----------------------------------------------
class EventCreate(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    school: Optional[str] = Field(default=None, max_length=200)
    date: Optional[dt.date] = None
    status: EventStatus = "active"


class EventUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=200)
    school: Optional[str] = Field(default=None, max_length=200)
    date: Optional[dt.date] = None
    status: Optional[EventStatus] = None


class SubjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    grade: Optional[str] = Field(default=None, max_length=100)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)


class SubjectsCreate(BaseModel):
    subjects: List[SubjectCreate] = Field(min_length=1, max_length=500)


class RotateTokenRequest(BaseModel):
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)


class PriceItemIn(BaseModel):
    label: str = Field(min_length=1, max_length=200)
    price_type: str = Field(min_length=1, max_length=50)
    price_cents: int = Field(ge=0)
    is_digital: bool = True
    sort_order: Optional[int] = None


class PriceListIn(BaseModel):
    items: List[PriceItemIn] = Field(min_length=1, max_length=50)


# --- folders ------------------------------------------------------------------
class FolderCreate(BaseModel):
    event_id: str
    name: str = Field(min_length=1, max_length=255)
    parent_id: Optional[str] = None
    description: Optional[str] = None
    sort_order: int = 0
    metadata: Optional[Dict[str, Any]] = None


class FolderUpdate(BaseModel):
    """Fields left out of the body are not touched; ``parent_id: null`` moves to the event root."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    parent_id: Optional[str] = None
    description: Optional[str] = None
    sort_order: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


# --- photos / assets ----------------------------------------------------------
class PhotoIds(BaseModel):
    photo_ids: List[str] = Field(min_length=1, max_length=100)


class PhotoMove(PhotoIds):
    folder_id: Optional[str] = None


class PhotoApprove(PhotoIds):
    approved: bool = True


class BulkAssetRequest(BaseModel):
    action: Literal["move", "delete"]
    asset_ids: List[str] = Field(min_length=1, max_length=100)
    target_folder_id: Optional[str] = None


class SignedUrlRequest(BaseModel):
    photo_ids: List[str] = Field(min_length=1, max_length=100)
    originals: bool = False


class TagRequest(BaseModel):
    subject_id: str
    photo_ids: List[str] = Field(min_length=1, max_length=100)


# --- orders -------------------------------------------------------------------
class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = Field(default=None, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=2000)


# --- coupons ------------------------------------------------------------------
class CouponCreate(BaseModel):
    code: str = Field(min_length=3, max_length=20)
    type: CouponType
    value: float = Field(ge=0)
    min_purchase_cents: int = Field(default=0, ge=0)
    max_discount_cents: Optional[int] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: int = Field(default=1, ge=1)
    valid_from: Optional[dt.datetime] = None
    expires_at: Optional[dt.datetime] = None
    is_active: bool = True
    description: Optional[str] = None
    applies_to_digital: bool = True
    applies_to_physical: bool = True


class CouponUpdate(BaseModel):
    type: Optional[CouponType] = None
    value: Optional[float] = Field(default=None, ge=0)
    min_purchase_cents: Optional[int] = Field(default=None, ge=0)
    max_discount_cents: Optional[int] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_user: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[dt.datetime] = None
    expires_at: Optional[dt.datetime] = None
    is_active: Optional[bool] = None
    description: Optional[str] = None
    applies_to_digital: Optional[bool] = None
    applies_to_physical: Optional[bool] = None


# --- shares -------------------------------------------------------------------
class ShareCreate(BaseModel):
    event_id: str
    share_type: ShareType = "event"
    folder_id: Optional[str] = None
    photo_ids: Optional[List[str]] = Field(default=None, max_length=500)
    include_descendants: bool = False
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=4, max_length=100)
    expires_at: Optional[dt.datetime] = None
    max_views: Optional[int] = Field(default=None, ge=1)
    allow_download: bool = False


# --- store settings -----------------------------------------------------------
class StoreSettingsIn(BaseModel):
    event_id: Optional[str] = None
    enabled: Optional[bool] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    welcome_message: Optional[str] = Field(default=None, max_length=2000)
    download_enabled: Optional[bool] = None
    theme: Optional[Dict[str, Any]] = None
    products: Optional[List[Dict[str, Any]]] = None
