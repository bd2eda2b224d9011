"""
Order Service — イベントストア

Event Sourcing の中核コンポーネント。
イベントを追記し、集約の再構築に使う。注文の監査証跡でもある。
バージョン番号による楽観的ロックで同時書き込みを防ぐ。
"""

import json
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession


class VersionConflict(Exception):
    """同じ集約に対して別の書き込みが先にコミットされた"""

    def __init__(self, aggregate_id: str, version: int) -> None:
        super().__init__(f"Version {version} of {aggregate_id} already exists")
        self.aggregate_id = aggregate_id
        self.version = version


async def append_event(
    session: AsyncSession,
    aggregate_id: str,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    expected_version: int,
) -> int:
    """
    イベントをストアに追記する。

    expected_version で楽観的ロックを実現:
    同じ aggregate_id + version の組み合わせが既に存在すると
    UNIQUE 制約違反で失敗する → VersionConflict として通知する。
    """
    new_version = expected_version + 1
    try:
        await session.execute(
            text("""
                INSERT INTO event_store
                    (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
                VALUES
                    (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
            """),
            {
                "agg_id": aggregate_id,
                "agg_type": aggregate_type,
                "evt_type": event_type,
                "evt_data": json.dumps(event_data, default=str),
                "version": new_version,
                "now": datetime.now(timezone.utc).isoformat(),
            },
        )
    except IntegrityError as e:
        await session.rollback()
        raise VersionConflict(aggregate_id, new_version) from e
    return new_version


async def load_events(
    session: AsyncSession,
    aggregate_id: str,
) -> list[dict]:
    """
    指定した集約の全イベントをバージョン順に読み出す。
    集約を再構築（リプレイ）するために使う。
    """
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data) if isinstance(row.event_data, str) else row.event_data,
            "version": row.version,
            "created_at": row.created_at,
        }
        for row in result.fetchall()
    ]
