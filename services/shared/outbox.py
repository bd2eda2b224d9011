"""
Shared — トランザクショナル・アウトボックス (Transactional Outbox)

状態変更と同じトランザクションで event_outbox に行を追加し、
別タスク (relay) がブローカーへ発行する。

  ┌──────────────┐ 同一 TX ┌──────────────┐  relay  ┌───────────┐
  │ event_store  │ ◀──────▶ │ event_outbox │ ──────▶ │ EventBus  │
  └──────────────┘         └──────────────┘         └───────────┘

ブローカー停止中でもコマンドの結果は確定し、イベントは後で必ず届く。
配送は at-least-once なので、受信側は orderId で冪等にすること。
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .bus import EventBus
from .errors import TransientBrokerError

logger = logging.getLogger(__name__)

OUTBOX_DDL = """
    CREATE TABLE IF NOT EXISTS event_outbox (
        id TEXT PRIMARY KEY,
        routing_key TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        published_at TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    )
"""


async def add_message(session: AsyncSession, routing_key: str, record: dict) -> str:
    """アウトボックスに追加する。commit は呼び出し側のトランザクションに任せる。"""
    outbox_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO event_outbox (id, routing_key, payload, created_at, attempts)
            VALUES (:id, :routing_key, :payload, :now, 0)
        """),
        {
            "id": outbox_id,
            "routing_key": routing_key,
            "payload": json.dumps(record, default=str),
            "now": datetime.now(timezone.utc).isoformat(),
        },
    )
    return outbox_id


async def pending_messages(session: AsyncSession, limit: int = 100) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, routing_key, payload, attempts
            FROM event_outbox
            WHERE published_at IS NULL
            ORDER BY created_at ASC
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [
        {
            "id": row.id,
            "routing_key": row.routing_key,
            "payload": row.payload,
            "attempts": row.attempts,
        }
        for row in result.fetchall()
    ]


async def relay_pending(
    session_factory: async_sessionmaker,
    bus: EventBus,
    limit: int = 100,
) -> int:
    """
    未発行の行をバスへ発行する。発行できた件数を返す。

    発行に失敗したら attempts と last_error を記録して打ち切る
    （次回のポーリングで先頭から再試行し、順序を保つ）。
    """
    published = 0
    async with session_factory() as session:
        for entry in await pending_messages(session, limit):
            try:
                await bus.publish(entry["routing_key"], entry["payload"].encode("utf-8"))
            except TransientBrokerError as e:
                await session.execute(
                    text("""
                        UPDATE event_outbox
                        SET attempts = attempts + 1, last_error = :error
                        WHERE id = :id
                    """),
                    {"id": entry["id"], "error": str(e)},
                )
                await session.commit()
                logger.warning(
                    "Outbox publish failed for %s (%s), attempt %d: %s",
                    entry["id"],
                    entry["routing_key"],
                    entry["attempts"] + 1,
                    e,
                )
                break

            await session.execute(
                text("""
                    UPDATE event_outbox
                    SET published_at = :now, attempts = attempts + 1
                    WHERE id = :id
                """),
                {"id": entry["id"], "now": datetime.now(timezone.utc).isoformat()},
            )
            await session.commit()
            published += 1
    return published


async def run_relay(
    session_factory: async_sessionmaker,
    bus: EventBus,
    shutdown_event: asyncio.Event,
    poll_interval: float = 1.0,
) -> None:
    """shutdown_event がセットされるまでアウトボックスをポーリングし続ける。"""
    logger.info("Outbox relay started")
    while not shutdown_event.is_set():
        try:
            count = await relay_pending(session_factory, bus)
            if count:
                logger.info("Relayed %d outbox message(s)", count)
        except Exception:
            logger.exception("Outbox relay iteration failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Outbox relay stopped")
