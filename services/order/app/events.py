"""
Order Service — イベント定義

注文の書き込みがコミットされた後に発行する変更通知 (change feed)。
クライアント画面はこれを購読してリアルタイムに表示を更新する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作成され、商品が予約された"""
    order_id: str
    receipt_number: str | None
    buyer_id: str
    seller_id: str
    product_id: str
    total_amount: Decimal
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが管理者によって変更された"""
    order_id: str
    product_id: str
    from_status: str
    to_status: str
    actor_id: str
    product_released: bool = False
    timestamp: datetime
