"""
Order Service — イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

バス上の routing key:
  order.created    情報通知のみ（在庫は変更しない）
  order.completed  決済成功 + 在庫引き落とし完了
  order.cancelled  キャンセル
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

ROUTING_KEYS = {
    "OrderCreated": "order.created",
    "OrderCompleted": "order.completed",
    "OrderCancelled": "order.cancelled",
}


class OrderItem(BaseModel):
    """注文明細（作成時のスナップショット）"""
    model_config = ConfigDict(frozen=True)

    sku: str = Field(min_length=1)
    qty: int


class OrderCreated(BaseModel):
    """注文が作成された（status = pending）"""
    order_id: str
    owner_id: str
    items: list[OrderItem]
    total: Decimal
    timestamp: datetime


class OrderCompleted(BaseModel):
    """注文が完了した（決済成功・在庫引き落とし済み）"""
    order_id: str
    payment_id: str | None = None
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた"""
    order_id: str
    reason: str
    timestamp: datetime
