"""
Order Service — スキーマ

event_store          注文イベント（主キー (aggregate_id, version) が楽観的ロック）
orders_read_model    クエリ用の非正規化ビュー
event_outbox         バスへ発行待ちのイベント
"""

from services.shared.outbox import OUTBOX_DDL

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS event_store (
        aggregate_id TEXT NOT NULL,
        aggregate_type TEXT NOT NULL,
        event_type TEXT NOT NULL,
        event_data TEXT NOT NULL,
        version INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders_read_model (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        items TEXT NOT NULL,
        total TEXT NOT NULL,
        status TEXT NOT NULL,
        payment_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_owner ON orders_read_model (owner_id)",
    OUTBOX_DDL,
]
