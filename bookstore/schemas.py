from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CartItemCreate(BaseModel):
    book_id: int
    quantity: int = Field(default=1, ge=1)


class CartItemPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    quantity: int = Field(..., ge=1)


class CouponCode(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class CheckoutRequest(BaseModel):
    payment_method: Literal["cod", "wallet", "online"]
    delivery_charge: Decimal = Field(default=Decimal("0"), ge=0)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ReturnReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    reason: Optional[str] = None
    condition: Optional[Literal["good", "damaged", "unusable"]] = None


class OrderStatusPatch(BaseModel):
    """The only order field an admin may change directly."""

    model_config = ConfigDict(extra="forbid")

    status: Literal["Placed", "Processing", "Shipped", "Out for Delivery", "Delivered"]


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    type: Literal["flat", "percent"]
    value: Decimal = Field(..., gt=0)
    min_order_value: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount: Decimal = Field(default=Decimal("0"), ge=0)
    expiry: datetime
    usage_limit: int = Field(..., ge=1)


class OfferCreate(BaseModel):
    target_id: int
    discount_percent: Decimal = Field(..., gt=0, le=100)
    start_date: datetime
    end_date: datetime


class CouponPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Optional[Literal["flat", "percent"]] = None
    value: Optional[Decimal] = Field(default=None, gt=0)
    min_order_value: Optional[Decimal] = Field(default=None, ge=0)
    max_discount: Optional[Decimal] = Field(default=None, ge=0)
    expiry: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=1)
    active: Optional[bool] = None


class OfferPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    discount_percent: Optional[Decimal] = Field(default=None, gt=0, le=100)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    active: Optional[bool] = None
