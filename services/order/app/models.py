"""
Order Service — 型付きモデル

リクエスト / レスポンスと、ストアから読み出した行を Pydantic で表現する。
動的な JSON をそのまま扱わず、境界で検証してから内部に渡す。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, PlainSerializer, field_validator

# 金額は内部では Decimal、JSON では数値として返す
Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cod"
    ONLINE = "online"


# ── ストアの行 ───────────────────────────────────


class Identity(BaseModel):
    """Identity Provider が検証したユーザー"""
    user_id: str
    email: str | None = None


class Product(BaseModel):
    id: str
    name: str
    price: Money
    is_available: bool
    seller_id: str


class Order(BaseModel):
    id: str
    receipt_number: str | None = None
    buyer_id: str
    seller_id: str
    product_id: str
    total_amount: Money
    status: OrderStatus = OrderStatus.PENDING
    shipping_address: str | None = None
    buyer_phone: str | None = None
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY
    created_at: datetime
    updated_at: datetime | None = None
    confirmed_at: datetime | None = None
    confirmed_by: str | None = None
    tracking_number: str | None = None
    notes: str | None = None


# ── Request / Response Models ────────────────────


class CreateOrderRequest(BaseModel):
    """
    購入リクエスト本文。

    価格や合計金額のフィールドは定義しない。クライアントが送ってきても
    無視される (extra は捨てられる)。
    """
    product_id: str = Field(min_length=1)
    quantity: int
    shipping_address: str | None = None
    buyer_phone: str | None = None
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY

    @field_validator("quantity", mode="before")
    @classmethod
    def validate_quantity(cls, v):
        # JSON の数値だけを受け付ける。1.0 は 1 として扱う
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("quantity must be a number")
        if isinstance(v, float):
            if not v.is_integer():
                raise ValueError("quantity must be a whole number")
            return int(v)
        return v


class CreateOrderResponse(BaseModel):
    order: Order
    product_name: str
    validated_price: Money
    validated_total: Money
    receipt_number: str | None = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    notes: str | None = None
    tracking_number: str | None = None


class UpdateTrackingRequest(BaseModel):
    tracking_number: str = Field(min_length=1)
