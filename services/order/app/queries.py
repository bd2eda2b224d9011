"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取りはリードモデル(Read Model)から行う。
一般ユーザーは自分の注文だけ、管理者は全件（owner_id で絞り込み可）を見られる。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.auth import Principal, ensure_admin, ensure_owner_or_admin
from services.shared.errors import NotFoundError

from . import event_store


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "owner_id": row.owner_id,
        "items": json.loads(row.items),
        "total": row.total,
        "status": row.status,
        "payment_id": row.payment_id,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def get_order(session: AsyncSession, principal: Principal, order_id: str) -> dict:
    """リードモデルから注文を取得する。"""
    result = await session.execute(
        text("SELECT * FROM orders_read_model WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        raise NotFoundError(f"Order {order_id} not found")
    ensure_owner_or_admin(principal, row.owner_id)
    return _to_dict(row)


async def list_orders(
    session: AsyncSession,
    principal: Principal,
    owner_id: str | None = None,
) -> list[dict]:
    """注文一覧。管理者以外は自分の注文に限定する。"""
    if owner_id is not None and owner_id != principal.subject_id:
        ensure_admin(principal)
    if owner_id is None and not principal.is_admin:
        owner_id = principal.subject_id

    if owner_id is None:
        result = await session.execute(
            text("SELECT * FROM orders_read_model ORDER BY created_at DESC"),
        )
    else:
        result = await session.execute(
            text("""
                SELECT * FROM orders_read_model
                WHERE owner_id = :owner_id
                ORDER BY created_at DESC
            """),
            {"owner_id": owner_id},
        )
    return [_to_dict(row) for row in result.fetchall()]


async def get_order_history(
    session: AsyncSession, principal: Principal, order_id: str
) -> list[dict]:
    """注文のイベント履歴（監査証跡）"""
    events = await event_store.load_events(session, order_id)
    if not events:
        raise NotFoundError(f"Order {order_id} not found")
    ensure_owner_or_admin(principal, events[0]["event_data"]["owner_id"])
    return events
