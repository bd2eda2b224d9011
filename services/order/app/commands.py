"""
Order Service — コマンドハンドラ (CQRS の Write 側)

コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同じトランザクションでリードモデルとアウトボックスも更新する。

  create    → pending
  complete  → 在庫 Saga 成功なら completed。在庫不足なら pending のまま
  cancel    → cancelled（在庫には触れない: pending の間は引き落としていない）

在庫の引き落としは completion の 1 回だけ。order.created は情報通知で、
在庫を変更するコンシューマは存在しない。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared import outbox
from services.shared.auth import Principal, ensure_owner_or_admin
from services.shared.db import transient_store_errors
from services.shared.errors import Conflict, NotFoundError, ValidationError

from . import event_store
from .aggregate import COMPLETED, OrderAggregate
from .events import ROUTING_KEYS, OrderCancelled, OrderCompleted, OrderCreated, OrderItem
from .stock import StockLedger, apply_order_stock, compensate_order_stock

logger = logging.getLogger(__name__)

AGGREGATE_TYPE = "Order"


def validate_items(items: list) -> list[OrderItem]:
    if not items:
        raise ValidationError("Order must contain at least one item")
    validated = []
    for raw in items:
        item = raw if isinstance(raw, OrderItem) else None
        if item is None:
            if not isinstance(raw, dict) or not raw.get("sku"):
                raise ValidationError(f"Invalid order item: {raw!r}")
            qty = raw.get("qty")
            if isinstance(qty, bool) or not isinstance(qty, int):
                raise ValidationError(f"Quantity for {raw['sku']} must be an integer")
            item = OrderItem(sku=raw["sku"], qty=qty)
        if item.qty <= 0:
            raise ValidationError(f"Quantity for {item.sku} must be positive, got {item.qty}")
        validated.append(item)
    return validated


def _validate_total(total) -> Decimal:
    try:
        amount = Decimal(str(total))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid total: {total!r}") from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Invalid total: {total!r}")
    return amount


async def load_order(session: AsyncSession, order_id: str) -> OrderAggregate:
    events = await event_store.load_events(session, order_id)
    if not events:
        raise NotFoundError(f"Order {order_id} not found")
    return OrderAggregate.from_events(events)


async def _record(
    session: AsyncSession,
    agg: OrderAggregate,
    event_type: str,
    event_data: dict,
) -> int:
    """イベント追記 + アウトボックス追加。commit は呼び出し側で行う。"""
    version = await event_store.append_event(
        session, agg.id, AGGREGATE_TYPE, event_type, event_data, agg.version
    )
    await outbox.add_message(
        session,
        ROUTING_KEYS[event_type],
        {"kind": ROUTING_KEYS[event_type], "orderId": agg.id, **event_data},
    )
    return version


async def create_order(
    session: AsyncSession,
    principal: Principal,
    items: list,
    total,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. OrderCreated イベントを生成
    2. イベントストアに保存
    3. リードモデルを更新
    4. アウトボックスに order.created を積む（relay がバスへ発行）
    """
    validated = validate_items(items)
    amount = _validate_total(total)

    order_id = str(uuid4())
    event_data = OrderCreated(
        order_id=order_id,
        owner_id=principal.subject_id,
        items=validated,
        total=amount,
        timestamp=datetime.now(timezone.utc),
    ).model_dump(mode="json")
    now = event_data["timestamp"]

    agg = OrderAggregate()
    agg.id = order_id
    async with transient_store_errors(session):
        version = await _record(session, agg, "OrderCreated", event_data)
        await session.execute(
            text("""
                INSERT INTO orders_read_model
                    (id, owner_id, items, total, status, created_at, updated_at)
                VALUES
                    (:id, :owner_id, :items, :total, 'pending', :now, :now)
            """),
            {
                "id": order_id,
                "owner_id": principal.subject_id,
                "items": json.dumps(event_data["items"]),
                "total": str(amount),
                "now": now,
            },
        )
        await session.commit()

    agg.apply_order_created(event_data)
    agg.version = version
    logger.info("Order %s created by %s (%d item(s))", order_id, principal.subject_id, len(validated))
    return agg


async def complete_order(
    session: AsyncSession,
    ledger: StockLedger,
    principal: Principal,
    order_id: str,
    payment_id: str | None = None,
) -> OrderAggregate:
    """
    注文完了コマンド（決済成功後に呼ばれる）

    - completed に対する再呼び出しは何もせず completed を返す（冪等）
    - pending なら在庫 Saga を実行し、成功したら OrderCompleted を記録
    - Saga が InsufficientStock で失敗したら pending のまま例外を送出
    - OrderCompleted の記録に失敗したら引き落とし分を戻してから例外を送出
    - 同時実行で他方が先に記録した場合は再読込して結果に合わせる
    """
    agg = await load_order(session, order_id)
    ensure_owner_or_admin(principal, agg.owner_id)

    if agg.status == COMPLETED:
        logger.info("Order %s already completed, ignoring duplicate completion", order_id)
        return agg
    agg.ensure_can_complete()

    # 読み取りで始まった TX を閉じ、Saga 中に DB 接続を握ったままにしない
    await session.commit()
    decrements = await apply_order_stock(ledger, order_id, agg.items)

    event_data = OrderCompleted(
        order_id=order_id, payment_id=payment_id, timestamp=datetime.now(timezone.utc)
    ).model_dump(mode="json")
    now = event_data["timestamp"]
    try:
        async with transient_store_errors(session):
            version = await _record(session, agg, "OrderCompleted", event_data)
            await session.execute(
                text("""
                    UPDATE orders_read_model
                    SET status = 'completed', payment_id = :payment_id, updated_at = :now
                    WHERE id = :id
                """),
                {"id": order_id, "payment_id": payment_id, "now": now},
            )
            await session.commit()
    except event_store.VersionConflict:
        agg = await load_order(session, order_id)
        if agg.status == COMPLETED:
            logger.info("Order %s completed concurrently, converging", order_id)
            return agg
        logger.warning(
            "Order %s became %s while completing, returning stock", order_id, agg.status
        )
        await compensate_order_stock(ledger, order_id, decrements, agg.items)
        agg.ensure_can_complete()
        raise Conflict(f"Order {order_id} was modified concurrently")
    except Exception:
        logger.warning("Recording completion of order %s failed, returning stock", order_id)
        await compensate_order_stock(ledger, order_id, decrements, agg.items)
        raise

    agg.apply_order_completed(event_data)
    agg.version = version
    logger.info("Order %s completed (payment=%s)", order_id, payment_id)
    return agg


async def cancel_order(
    session: AsyncSession,
    principal: Principal,
    order_id: str,
    reason: str = "",
) -> OrderAggregate:
    """
    注文キャンセルコマンド

    pending からのみ可能。在庫は pending の間は引き落としていないので触れない。
    """
    agg = await load_order(session, order_id)
    ensure_owner_or_admin(principal, agg.owner_id)
    agg.ensure_can_cancel()

    event_data = OrderCancelled(
        order_id=order_id, reason=reason, timestamp=datetime.now(timezone.utc)
    ).model_dump(mode="json")
    now = event_data["timestamp"]
    try:
        async with transient_store_errors(session):
            version = await _record(session, agg, "OrderCancelled", event_data)
            await session.execute(
                text("""
                    UPDATE orders_read_model
                    SET status = 'cancelled', updated_at = :now
                    WHERE id = :id
                """),
                {"id": order_id, "now": now},
            )
            await session.commit()
    except event_store.VersionConflict:
        agg = await load_order(session, order_id)
        agg.ensure_can_cancel()
        raise Conflict(f"Order {order_id} was modified concurrently")

    agg.apply_order_cancelled(event_data)
    agg.version = version
    logger.info("Order %s cancelled by %s: %s", order_id, principal.subject_id, reason)
    return agg
