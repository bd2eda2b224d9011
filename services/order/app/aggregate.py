"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
ensure_can_xxx メソッド: 状態遷移の可否を判定する（不可なら Conflict）
"""

from decimal import Decimal

from services.shared.errors import Conflict

from .events import OrderItem

PENDING = "pending"
COMPLETED = "completed"
CANCELLED = "cancelled"
TERMINAL_STATES = frozenset({COMPLETED, CANCELLED})


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    状態遷移:
        pending → completed  (決済成功 + 在庫引き落とし成功)
        pending → cancelled  (キャンセル / 決済失敗)
    終端状態 (completed, cancelled) からの遷移はない。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.owner_id: str = ""
        self.items: tuple[OrderItem, ...] = ()
        self.total: Decimal = Decimal("0")
        self.status: str = "unknown"
        self.payment_id: str | None = None
        self.cancel_reason: str | None = None
        self.created_at: str | None = None
        self.version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.owner_id = data["owner_id"]
        self.items = tuple(OrderItem(**item) for item in data["items"])
        self.total = Decimal(str(data["total"]))
        self.created_at = data["timestamp"]
        self.status = PENDING

    def apply_order_completed(self, data: dict) -> None:
        self.payment_id = data.get("payment_id")
        self.status = COMPLETED

    def apply_order_cancelled(self, data: dict) -> None:
        self.cancel_reason = data.get("reason")
        self.status = CANCELLED

    # ── 状態遷移の検証 ───────────────────────────────

    def ensure_can_complete(self) -> None:
        if self.status != PENDING:
            raise Conflict(f"Order {self.id} is {self.status} and cannot be completed")

    def ensure_can_cancel(self) -> None:
        if self.status != PENDING:
            raise Conflict(f"Order {self.id} is {self.status} and cannot be cancelled")

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderCompleted": self.apply_order_completed,
            "OrderCancelled": self.apply_order_cancelled,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "items": [item.model_dump() for item in self.items],
            "total": str(self.total),
            "status": self.status,
            "payment_id": self.payment_id,
            "created_at": self.created_at,
            "version": self.version,
        }
