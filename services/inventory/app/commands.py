"""
Inventory Service — コマンドハンドラ (Write 側)

在庫数はプロセス内のカウンタではなく、ストアの 1 行に対する
条件付き UPDATE で増減する。行ロックはストアが取るので、
複数インスタンスが同時に動いても売り越し(oversell)は起きない。

  UPDATE inventory SET quantity = quantity - :qty
  WHERE sku = :sku AND quantity >= :qty      -- 0 行 ⇒ 在庫不足

order_id を渡すと inventory_applications にマーカーを同じ TX で記録する。
同じ注文の重複呼び出し（at-least-once 配信やリトライ）は何もしない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.db import apply_lock_timeout, transient_store_errors
from services.shared.errors import InsufficientStock, NotFoundError, ValidationError

from .models import DecrementResult

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MS = 2000


def _validate_qty(qty: int, allow_zero: bool = False) -> None:
    if isinstance(qty, bool) or not isinstance(qty, int):
        raise ValidationError(f"Quantity must be an integer, got {qty!r}")
    if qty < 0 or (qty == 0 and not allow_zero):
        raise ValidationError(f"Quantity must be positive, got {qty}")


async def _current_quantity(session: AsyncSession, sku: str) -> int | None:
    result = await session.execute(
        text("SELECT quantity FROM inventory WHERE sku = :sku"),
        {"sku": sku},
    )
    row = result.fetchone()
    return row.quantity if row else None


async def try_decrement(
    session: AsyncSession,
    sku: str,
    qty: int,
    order_id: str | None = None,
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
) -> DecrementResult:
    """
    在庫引き落としコマンド

    1. (order_id あり) マーカーを INSERT。衝突したら適用済み → 何もしない
    2. 条件付き UPDATE。0 行なら ROLLBACK して InsufficientStock
    3. COMMIT
    """
    _validate_qty(qty)
    now = datetime.now(timezone.utc).isoformat()

    async with transient_store_errors(session):
        await apply_lock_timeout(session, lock_timeout_ms)

        if order_id is not None:
            marker = await session.execute(
                text("""
                    INSERT INTO inventory_applications (order_id, sku, qty, applied_at)
                    VALUES (:order_id, :sku, :qty, :now)
                    ON CONFLICT (order_id, sku) DO NOTHING
                """),
                {"order_id": order_id, "sku": sku, "qty": qty, "now": now},
            )
            if marker.rowcount == 0:
                quantity = await _current_quantity(session, sku)
                await session.rollback()
                logger.info(
                    "Decrement of %s already applied for order %s, skipping", sku, order_id
                )
                return DecrementResult(sku=sku, quantity=quantity or 0, applied=False)

        result = await session.execute(
            text("""
                UPDATE inventory
                SET quantity = quantity - :qty, updated_at = :now
                WHERE sku = :sku AND quantity >= :qty
            """),
            {"qty": qty, "sku": sku, "now": now},
        )
        if result.rowcount == 0:
            available = await _current_quantity(session, sku)
            await session.rollback()
            if available is None:
                raise NotFoundError(f"Product {sku} not found in inventory")
            logger.info(
                "Insufficient stock for %s: requested=%d, available=%d", sku, qty, available
            )
            raise InsufficientStock(sku, qty, available)

        quantity = await _current_quantity(session, sku)
        await session.commit()

    logger.info("Decremented %d unit(s) of %s -> %d (order=%s)", qty, sku, quantity, order_id)
    return DecrementResult(sku=sku, quantity=quantity, applied=True)


async def increment(
    session: AsyncSession,
    sku: str,
    qty: int,
    order_id: str | None = None,
    lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
) -> int:
    """
    在庫戻しコマンド（Saga の補償トランザクション）

    order_id を渡すと、その注文のマーカーを削除できた場合だけ戻す。
    戻す数量はマーカーに記録された数量。補償を何度呼んでも 1 回分しか戻らない。
    """
    _validate_qty(qty)
    now = datetime.now(timezone.utc).isoformat()

    async with transient_store_errors(session):
        await apply_lock_timeout(session, lock_timeout_ms)

        if order_id is not None:
            marker = await session.execute(
                text("""
                    SELECT qty FROM inventory_applications
                    WHERE order_id = :order_id AND sku = :sku
                """),
                {"order_id": order_id, "sku": sku},
            )
            row = marker.fetchone()
            deleted = await session.execute(
                text("""
                    DELETE FROM inventory_applications
                    WHERE order_id = :order_id AND sku = :sku
                """),
                {"order_id": order_id, "sku": sku},
            )
            if row is None or deleted.rowcount == 0:
                quantity = await _current_quantity(session, sku)
                await session.rollback()
                logger.info(
                    "Nothing to compensate for %s on order %s, skipping", sku, order_id
                )
                if quantity is None:
                    raise NotFoundError(f"Product {sku} not found in inventory")
                return quantity
            if row.qty != qty:
                logger.warning(
                    "Compensation for %s on order %s requested %d, restoring recorded %d",
                    sku,
                    order_id,
                    qty,
                    row.qty,
                )
            qty = row.qty

        result = await session.execute(
            text("""
                UPDATE inventory
                SET quantity = quantity + :qty, updated_at = :now
                WHERE sku = :sku
            """),
            {"qty": qty, "sku": sku, "now": now},
        )
        if result.rowcount == 0:
            await session.rollback()
            raise NotFoundError(f"Product {sku} not found in inventory")

        quantity = await _current_quantity(session, sku)
        await session.commit()

    logger.info("Restored %d unit(s) of %s -> %d (order=%s)", qty, sku, quantity, order_id)
    return quantity


async def receive_stock(
    session: AsyncSession,
    sku: str,
    qty: int,
    name: str | None = None,
    price: Decimal | None = None,
) -> int:
    """
    入荷コマンド（管理者用）

    レコードがなければ作成し、あれば quantity に加算する。
    読んでから書き戻すのではなく、UPSERT 1 文で原子的に行う。
    """
    _validate_qty(qty, allow_zero=True)
    if not sku:
        raise ValidationError("SKU must not be empty")
    now = datetime.now(timezone.utc).isoformat()

    async with transient_store_errors(session):
        await session.execute(
            text("""
                INSERT INTO inventory (sku, name, price, quantity, updated_at)
                VALUES (:sku, :insert_name, :insert_price, :qty, :now)
                ON CONFLICT (sku) DO UPDATE SET
                    quantity = inventory.quantity + excluded.quantity,
                    name = COALESCE(:update_name, inventory.name),
                    price = COALESCE(:update_price, inventory.price),
                    updated_at = excluded.updated_at
            """),
            {
                "sku": sku,
                "insert_name": name or "",
                "insert_price": str(price if price is not None else Decimal("0")),
                "update_name": name,
                "update_price": str(price) if price is not None else None,
                "qty": qty,
                "now": now,
            },
        )
        quantity = await _current_quantity(session, sku)
        await session.commit()

    logger.info("Received %d unit(s) of %s -> %d", qty, sku, quantity)
    return quantity
