"""
Fulfillment Coordinator — 決済確定 → 注文完了

オーケストレーション型の Saga:
  決済の capture 結果に応じて Order Service のコマンドを呼び分ける。
  在庫の引き落としと補償は Order Service の completion 内で行われる。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. 決済プロバイダで capture                              │
  │     ├─ COMPLETED → Order Service に注文完了を依頼        │
  │     │    ├─ 成功     → payment.succeeded を発行          │
  │     │    └─ 在庫不足 → pending のまま blocked_skus を返す │
  │     └─ FAILED    → Order Service に注文キャンセルを依頼  │
  └─────────────────────────────────────────────────────────┘

payment.succeeded の発行はレスポンスを待たせない（バックグラウンドで
バックオフ付きリトライ）。同じイベントはバスのコンシューマ
(handle_payment_succeeded) でも処理され、completion の冪等性で収束する。
"""

import asyncio
import logging
from datetime import datetime, timezone

from services.shared.bus import AckDecision, EventBus
from services.shared.errors import (
    Conflict,
    NotFoundError,
    TransientBrokerError,
    TransientError,
    ValidationError,
)
from services.shared.retry import RetryConfig, retry_async

from .order_client import OrderServiceClient
from .payments import COMPLETED, PaymentProvider

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
CAPTURE_COMPLETED_EVENT = "PAYMENT.CAPTURE.COMPLETED"
PAYMENT_FAILED_REASON = "payment failed"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FulfillmentCoordinator:
    """決済と注文完了をつなぐオーケストレーター"""

    def __init__(
        self,
        order_client: OrderServiceClient,
        payment_provider: PaymentProvider,
        bus: EventBus,
        service_token: str,
        publish_retry: RetryConfig | None = None,
    ):
        self.orders = order_client
        self.payments = payment_provider
        self.bus = bus
        self.service_token = service_token
        self.publish_retry = publish_retry or RetryConfig(max_retries=5, initial_delay=1.0)
        self._pending: set[asyncio.Task] = set()

    async def capture_payment(self, token: str, order_id: str, payment_id: str) -> dict:
        """
        決済を capture し、結果に応じて注文を完了またはキャンセルする。

        capture の前に呼び出し元のトークンで注文を読み、所有者チェックと
        状態確認を Order Service に任せる。完了済みの注文は capture せずに返す。
        """
        steps: list[dict] = []

        # ── Step 1: 注文の確認 ──────────────────────
        order = await self.orders.get(order_id, token)
        if order["status"] == "completed":
            logger.info("Order %s already completed, skipping capture", order_id)
            return {"success": True, "order": order, "payment": None, "steps": steps}
        if order["status"] != "pending":
            raise Conflict(f"Order {order_id} is {order['status']}, cannot capture payment")

        # ── Step 2: 決済の capture ──────────────────
        steps.append({"step": 1, "action": "CapturePayment", "timestamp": _now()})
        capture = await self.payments.capture(payment_id)
        steps[-1]["status"] = capture.status

        if capture.status != COMPLETED:
            # ── Step 3 (補償): 注文をキャンセル ─────
            steps.append({"step": 2, "action": "CancelOrder", "timestamp": _now()})
            order = await self.orders.cancel(order_id, token, PAYMENT_FAILED_REASON)
            steps[-1]["status"] = "COMPLETED"
            logger.warning("Payment %s for order %s failed, order cancelled", payment_id, order_id)
            return {
                "success": False,
                "order": order,
                "payment": capture.to_dict(),
                "steps": steps,
            }

        # ── Step 3: 注文を完了 ──────────────────────
        steps.append({"step": 2, "action": "CompleteOrder", "timestamp": _now()})
        result = await self.orders.complete(order_id, token, payment_id)
        steps[-1]["status"] = "COMPLETED" if not result.blocked_skus else "BLOCKED"

        self.publish_in_background(
            PAYMENT_SUCCEEDED,
            {
                "kind": PAYMENT_SUCCEEDED,
                "orderId": order_id,
                "paymentId": payment_id,
                "amount": str(capture.amount) if capture.amount is not None else None,
                "status": capture.status,
            },
        )

        response = {
            "success": not result.blocked_skus,
            "order": result.order,
            "payment": capture.to_dict(),
            "steps": steps,
        }
        if result.blocked_skus:
            logger.warning(
                "Order %s paid but blocked on stock: %s", order_id, ", ".join(result.blocked_skus)
            )
            response["blocked_skus"] = result.blocked_skus
        return response

    async def handle_payment_succeeded(self, record: dict) -> AckDecision:
        """payment.succeeded のコンシューマ。サービストークンで注文を完了する。"""
        order_id = record.get("orderId")
        if not order_id:
            logger.error("payment.succeeded without orderId: %r", record)
            return AckDecision.NACK_DROP

        try:
            result = await self.orders.complete(
                order_id, self.service_token, record.get("paymentId")
            )
        except TransientError as e:
            logger.warning("Completing order %s failed transiently: %s", order_id, e)
            return AckDecision.NACK_REQUEUE
        except NotFoundError:
            logger.warning("payment.succeeded for unknown order %s", order_id)
            return AckDecision.ACK
        except Conflict as e:
            logger.info("Order %s not completable: %s", order_id, e.detail)
            return AckDecision.ACK

        if result.blocked_skus:
            logger.warning(
                "Order %s left pending, insufficient stock for %s",
                order_id,
                ", ".join(result.blocked_skus),
            )
        return AckDecision.ACK

    async def handle_webhook(self, event: dict) -> dict:
        """
        決済プロバイダの Webhook。

        PAYMENT.CAPTURE.COMPLETED のみを payment.succeeded として発行する。
        発行に失敗したら 503 を返し、プロバイダに再送させる。
        """
        event_type = event.get("event_type")
        if event_type != CAPTURE_COMPLETED_EVENT:
            logger.info("Ignoring payment webhook %s", event_type)
            return {"published": False}

        resource = event.get("resource") or {}
        order_id = resource.get("custom_id") or resource.get("invoice_id")
        if not order_id or not resource.get("id"):
            raise ValidationError("Capture webhook is missing the order or capture id")

        await self.bus.publish_json(
            PAYMENT_SUCCEEDED,
            {
                "kind": PAYMENT_SUCCEEDED,
                "orderId": order_id,
                "paymentId": resource["id"],
                "amount": (resource.get("amount") or {}).get("value"),
                "status": COMPLETED,
            },
        )
        return {"published": True, "orderId": order_id}

    # ── Background publish ───────────────────────

    def publish_in_background(self, routing_key: str, record: dict) -> None:
        task = asyncio.create_task(self._publish_with_retry(routing_key, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish_with_retry(self, routing_key: str, record: dict) -> None:
        try:
            await retry_async(
                lambda: self.bus.publish_json(routing_key, record),
                config=self.publish_retry,
                retry_on=(TransientBrokerError,),
                description=f"publish {routing_key}",
            )
        except TransientBrokerError:
            logger.error(
                "Dropping %s for order %s after retries; provider webhook will redeliver",
                routing_key,
                record.get("orderId"),
            )

    async def drain(self) -> None:
        """発行待ちのタスクを待つ（シャットダウン時）"""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
