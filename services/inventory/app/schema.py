"""
Inventory Service — スキーマ

inventory                在庫レコード。quantity >= 0 を CHECK 制約でも保証する
inventory_applications   注文ごとの引き落とし済みマーカー（冪等性キー = order_id + sku）
"""

STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS inventory (
        sku TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        price TEXT NOT NULL DEFAULT '0',
        quantity INTEGER NOT NULL CHECK (quantity >= 0),
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_applications (
        order_id TEXT NOT NULL,
        sku TEXT NOT NULL,
        qty INTEGER NOT NULL,
        applied_at TEXT NOT NULL,
        PRIMARY KEY (order_id, sku)
    )
    """,
]
