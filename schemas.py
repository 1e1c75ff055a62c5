# schemas.py
from datetime import datetime
from typing import Any

from pydantic import BaseModel


class PromoCodeOut(BaseModel):
    id: int
    code: str
    description: str


class TokenOut(BaseModel):
    id: int
    token: str
    promo_code_id: int
    used: bool = False
    created_at: datetime
    used_at: datetime | None = None
    result: Any = None

    # Only filled in listings; None when the owning code no longer resolves
    promo_code: str | None = None


class IssuedTokenOut(BaseModel):
    token: str
    promo_code: str


class PublicPromoCode(BaseModel):
    code: str
    description: str


class TokenValidationOut(BaseModel):
    is_valid: bool
    promo_code: PublicPromoCode | None = None
