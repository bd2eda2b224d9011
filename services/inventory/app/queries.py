"""
Inventory Service — クエリハンドラ (Read 側)

並び順はコアの関心事ではない（表示側のポリシー）。ここでは SKU 順で返す。
"""

from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import StockApplication, StockRecord


def _to_record(row) -> StockRecord:
    return StockRecord(
        sku=row.sku,
        name=row.name,
        price=Decimal(row.price),
        quantity=row.quantity,
        updated_at=row.updated_at,
    )


async def get_stock(session: AsyncSession, sku: str) -> StockRecord | None:
    result = await session.execute(
        text("SELECT * FROM inventory WHERE sku = :sku"),
        {"sku": sku},
    )
    row = result.fetchone()
    if not row:
        return None
    return _to_record(row)


async def search_stock(session: AsyncSession, query: str = "") -> list[StockRecord]:
    """SKU または商品名の部分一致（大文字小文字を区別しない）"""
    pattern = f"%{query.lower()}%"
    result = await session.execute(
        text("""
            SELECT * FROM inventory
            WHERE LOWER(sku) LIKE :pattern OR LOWER(name) LIKE :pattern
            ORDER BY sku
        """),
        {"pattern": pattern},
    )
    return [_to_record(row) for row in result.fetchall()]


async def list_applications(session: AsyncSession, order_id: str) -> list[StockApplication]:
    result = await session.execute(
        text("""
            SELECT order_id, sku, qty, applied_at
            FROM inventory_applications
            WHERE order_id = :order_id
            ORDER BY sku
        """),
        {"order_id": order_id},
    )
    return [
        StockApplication(
            order_id=row.order_id, sku=row.sku, qty=row.qty, applied_at=row.applied_at
        )
        for row in result.fetchall()
    ]
