"""
Inventory Service — モデル定義

在庫ドメインの読み取り結果とコマンド結果。
"""

from decimal import Decimal

from pydantic import BaseModel


class StockRecord(BaseModel):
    """在庫レコード"""
    sku: str
    name: str
    price: Decimal
    quantity: int
    updated_at: str | None = None


class DecrementResult(BaseModel):
    """在庫引き落としの結果（applied=False は適用済みの重複呼び出し）"""
    sku: str
    quantity: int
    applied: bool


class StockApplication(BaseModel):
    """注文に対して適用済みの引き落とし（冪等性マーカー）"""
    order_id: str
    sku: str
    qty: int
    applied_at: str
