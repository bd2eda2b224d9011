"""Tests for the fulfillment coordinator.

The order service is replaced by a recording fake; payments use the mock
provider and events go to the in-memory bus.
"""

from __future__ import annotations

import pytest

from services.fulfillment.app.order_client import CompletionResult
from services.fulfillment.app.orchestrator import (
    PAYMENT_FAILED_REASON,
    PAYMENT_SUCCEEDED,
    FulfillmentCoordinator,
)
from services.fulfillment.app.payments import MockPaymentProvider
from services.shared.bus import AckDecision, InMemoryEventBus
from services.shared.errors import (
    Conflict,
    NotFoundError,
    PublishError,
    TransientError,
    ValidationError,
)
from services.shared.retry import RetryConfig


class FakeOrderClient:
    """Records calls and answers like the order service would."""

    def __init__(self, status: str = "pending", blocked_skus: list[str] | None = None) -> None:
        self.status = status
        self.blocked_skus = blocked_skus or []
        self.complete_error: Exception | None = None
        self.calls: list[tuple] = []

    def _order(self, order_id: str) -> dict:
        return {"id": order_id, "owner_id": "u1", "status": self.status}

    async def get(self, order_id: str, token: str) -> dict:
        self.calls.append(("get", order_id, token))
        return self._order(order_id)

    async def complete(self, order_id: str, token: str, payment_id: str | None = None):
        self.calls.append(("complete", order_id, token, payment_id))
        if self.complete_error is not None:
            raise self.complete_error
        if self.blocked_skus:
            return CompletionResult(order=self._order(order_id), blocked_skus=self.blocked_skus)
        self.status = "completed"
        return CompletionResult(order=self._order(order_id))

    async def cancel(self, order_id: str, token: str, reason: str) -> dict:
        self.calls.append(("cancel", order_id, token, reason))
        self.status = "cancelled"
        return self._order(order_id)


@pytest.fixture
def orders() -> FakeOrderClient:
    return FakeOrderClient()


@pytest.fixture
def payments() -> MockPaymentProvider:
    return MockPaymentProvider(failing={"PAY-DECLINED"})


@pytest.fixture
def coordinator(orders, payments, memory_bus) -> FulfillmentCoordinator:
    return FulfillmentCoordinator(
        orders,
        payments,
        memory_bus,
        "service-token",
        publish_retry=RetryConfig(max_retries=2, initial_delay=0.0, jitter=0.0),
    )


class TestCapturePayment:
    """Tests for capture_payment()."""

    @pytest.mark.asyncio
    async def test_successful_capture_completes_and_publishes(
        self, coordinator, orders, memory_bus
    ) -> None:
        result = await coordinator.capture_payment("u1-token", "o-1", "PAY-1")
        await coordinator.drain()

        assert result["success"] is True
        assert result["order"]["status"] == "completed"
        assert result["payment"]["status"] == "COMPLETED"
        assert "blocked_skus" not in result
        assert ("complete", "o-1", "u1-token", "PAY-1") in orders.calls
        assert memory_bus.messages_for(PAYMENT_SUCCEEDED) == [
            {
                "kind": PAYMENT_SUCCEEDED,
                "orderId": "o-1",
                "paymentId": "PAY-1",
                "amount": None,
                "status": "COMPLETED",
            }
        ]

    @pytest.mark.asyncio
    async def test_failed_capture_cancels_order(
        self, coordinator, orders, memory_bus
    ) -> None:
        result = await coordinator.capture_payment("u1-token", "o-1", "PAY-DECLINED")
        await coordinator.drain()

        assert result["success"] is False
        assert result["order"]["status"] == "cancelled"
        assert ("cancel", "o-1", "u1-token", PAYMENT_FAILED_REASON) in orders.calls
        assert memory_bus.published == []

    @pytest.mark.asyncio
    async def test_blocked_stock_reports_skus_and_keeps_pending(
        self, coordinator, orders
    ) -> None:
        orders.blocked_skus = ["B"]

        result = await coordinator.capture_payment("u1-token", "o-1", "PAY-1")
        await coordinator.drain()

        assert result["success"] is False
        assert result["blocked_skus"] == ["B"]
        assert result["order"]["status"] == "pending"
        assert not any(call[0] == "cancel" for call in orders.calls)

    @pytest.mark.asyncio
    async def test_completed_order_is_not_captured_again(
        self, coordinator, orders, payments
    ) -> None:
        orders.status = "completed"

        result = await coordinator.capture_payment("u1-token", "o-1", "PAY-1")

        assert result["success"] is True
        assert payments.captured == []

    @pytest.mark.asyncio
    async def test_cancelled_order_conflicts(self, coordinator, orders, payments) -> None:
        orders.status = "cancelled"

        with pytest.raises(Conflict):
            await coordinator.capture_payment("u1-token", "o-1", "PAY-1")

        assert payments.captured == []

    @pytest.mark.asyncio
    async def test_publish_is_retried_in_background(
        self, coordinator, memory_bus
    ) -> None:
        memory_bus.fail_publishes = 2

        result = await coordinator.capture_payment("u1-token", "o-1", "PAY-1")
        await coordinator.drain()

        assert result["success"] is True
        assert len(memory_bus.messages_for(PAYMENT_SUCCEEDED)) == 1

    @pytest.mark.asyncio
    async def test_publish_outage_does_not_fail_completion(
        self, coordinator, memory_bus
    ) -> None:
        memory_bus.fail_publishes = 10

        result = await coordinator.capture_payment("u1-token", "o-1", "PAY-1")
        await coordinator.drain()

        assert result["success"] is True
        assert memory_bus.published == []


class TestPaymentSucceededConsumer:
    """Tests for handle_payment_succeeded() ack decisions."""

    @pytest.mark.asyncio
    async def test_completes_with_service_token(self, coordinator, orders) -> None:
        decision = await coordinator.handle_payment_succeeded(
            {"orderId": "o-1", "paymentId": "PAY-1", "extra": "ignored"}
        )

        assert decision is AckDecision.ACK
        assert orders.calls == [("complete", "o-1", "service-token", "PAY-1")]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (TransientError("order service down"), AckDecision.NACK_REQUEUE),
            (NotFoundError("gone"), AckDecision.ACK),
            (Conflict("already cancelled"), AckDecision.ACK),
        ],
    )
    async def test_error_decisions(self, coordinator, orders, error, expected) -> None:
        orders.complete_error = error

        assert await coordinator.handle_payment_succeeded({"orderId": "o-1"}) is expected

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_acked(self, coordinator, orders) -> None:
        orders.blocked_skus = ["B"]

        decision = await coordinator.handle_payment_succeeded({"orderId": "o-1"})

        assert decision is AckDecision.ACK

    @pytest.mark.asyncio
    async def test_missing_order_id_is_dead_lettered(self, coordinator) -> None:
        assert await coordinator.handle_payment_succeeded({"paymentId": "PAY-1"}) is (
            AckDecision.NACK_DROP
        )

    @pytest.mark.asyncio
    async def test_unexpected_error_dead_letters_via_bus(
        self, coordinator, orders, memory_bus
    ) -> None:
        orders.complete_error = RuntimeError("bug")
        await memory_bus.subscribe(
            "fulfillment.payment.succeeded",
            PAYMENT_SUCCEEDED,
            coordinator.handle_payment_succeeded,
        )

        await memory_bus.publish_json(PAYMENT_SUCCEEDED, {"orderId": "o-1"})

        assert [q for q, _ in memory_bus.dead_letters] == ["fulfillment.payment.succeeded"]

    @pytest.mark.asyncio
    async def test_duplicate_deliveries_converge(self, coordinator, orders, memory_bus) -> None:
        await memory_bus.subscribe(
            "fulfillment.payment.succeeded",
            PAYMENT_SUCCEEDED,
            coordinator.handle_payment_succeeded,
        )

        for _ in range(2):
            await memory_bus.publish_json(PAYMENT_SUCCEEDED, {"orderId": "o-1"})

        assert orders.status == "completed"
        assert memory_bus.dead_letters == []
        assert memory_bus.requeued == []


class TestPaymentWebhook:
    """Tests for handle_webhook()."""

    @pytest.mark.asyncio
    async def test_capture_completed_is_republished(self, coordinator, memory_bus) -> None:
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAP-1", "custom_id": "o-1", "amount": {"value": "19.98"}},
        }

        result = await coordinator.handle_webhook(event)

        assert result == {"published": True, "orderId": "o-1"}
        assert memory_bus.messages_for(PAYMENT_SUCCEEDED) == [
            {
                "kind": PAYMENT_SUCCEEDED,
                "orderId": "o-1",
                "paymentId": "CAP-1",
                "amount": "19.98",
                "status": "COMPLETED",
            }
        ]

    @pytest.mark.asyncio
    async def test_invoice_id_fallback(self, coordinator, memory_bus) -> None:
        event = {
            "event_type": "PAYMENT.CAPTURE.COMPLETED",
            "resource": {"id": "CAP-1", "invoice_id": "o-2"},
        }

        assert (await coordinator.handle_webhook(event))["orderId"] == "o-2"

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, coordinator, memory_bus) -> None:
        result = await coordinator.handle_webhook({"event_type": "CHECKOUT.ORDER.APPROVED"})

        assert result == {"published": False}
        assert memory_bus.published == []

    @pytest.mark.asyncio
    async def test_missing_order_reference_rejected(self, coordinator) -> None:
        with pytest.raises(ValidationError):
            await coordinator.handle_webhook(
                {"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "CAP-1"}}
            )

    @pytest.mark.asyncio
    async def test_publish_failure_surfaces_for_redelivery(
        self, coordinator, memory_bus
    ) -> None:
        memory_bus.fail_publishes = 1

        with pytest.raises(PublishError):
            await coordinator.handle_webhook(
                {
                    "event_type": "PAYMENT.CAPTURE.COMPLETED",
                    "resource": {"id": "CAP-1", "custom_id": "o-1"},
                }
            )
