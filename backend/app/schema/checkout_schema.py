from __future__ import annotations

import uuid
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class ContactInfo(BaseModel):
    name: str = Field(min_length=2, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=50)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("name must have at least 2 characters")
        return v


class CheckoutItem(BaseModel):
    photo_id: uuid.UUID
    quantity: int = Field(ge=1, le=10)
    price_type: str = Field(default="base", min_length=1, max_length=50)


class CheckoutRequest(BaseModel):
    token: str = Field(min_length=20, max_length=128)
    contact_info: ContactInfo
    items: List[CheckoutItem] = Field(min_length=1, max_length=50)
    coupon_code: Optional[str] = Field(default=None, max_length=20)


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=20)
    subtotal_cents: int = Field(ge=0)
    email: Optional[EmailStr] = None
