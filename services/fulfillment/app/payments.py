"""
Fulfillment Service — 決済プロバイダ (PaymentProvider)

capture(payment_id) -> PaymentCapture {status: COMPLETED|FAILED, payment_id, amount}

実装は設定 (PAYMENT_PROVIDER) で切り替える:
  paypal  PayPal Orders v2 API（OAuth client credentials → capture）
  mock    常に COMPLETED を返す（開発・テスト用）

一時的障害 (5xx / 接続失敗) は TransientError として呼び出し元へ返す。
capture のリトライは外部の呼び出し元の責務。completion は status を
確認してから動くので、同じ capture を再送しても安全。
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from services.shared.errors import TransientError

logger = logging.getLogger(__name__)

COMPLETED = "COMPLETED"
FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentCapture:
    status: str
    payment_id: str
    amount: Decimal | None = None
    order_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "paymentId": self.payment_id,
            "amount": str(self.amount) if self.amount is not None else None,
        }


class PaymentProvider(Protocol):
    async def capture(self, payment_id: str) -> PaymentCapture: ...


class MockPaymentProvider:
    def __init__(
        self,
        default_amount: Decimal | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.default_amount = default_amount
        self.failing = set(failing or ())
        self.captured: list[str] = []

    async def capture(self, payment_id: str) -> PaymentCapture:
        self.captured.append(payment_id)
        status = FAILED if payment_id in self.failing else COMPLETED
        return PaymentCapture(status=status, payment_id=payment_id, amount=self.default_amount)


class PayPalPaymentProvider:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://api-m.sandbox.paypal.com",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _access_token(self) -> str:
        resp = await self._client.post(
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        if resp.status_code >= 500:
            raise TransientError(f"PayPal token endpoint returned {resp.status_code}")
        resp.raise_for_status()
        return resp.json()["access_token"]

    async def capture(self, payment_id: str) -> PaymentCapture:
        try:
            token = await self._access_token()
            headers = {"Authorization": f"Bearer {token}"}
            resp = await self._client.post(
                f"{self.base_url}/v2/checkout/orders/{payment_id}/capture",
                headers=headers,
                json={},
            )
            if resp.status_code == 422 and _issue(resp) == "ORDER_ALREADY_CAPTURED":
                # 再送された capture。現在の状態を取り直す
                resp = await self._client.get(
                    f"{self.base_url}/v2/checkout/orders/{payment_id}", headers=headers
                )
        except httpx.TransportError as e:
            raise TransientError(f"PayPal unreachable: {e}") from e

        if resp.status_code >= 500:
            raise TransientError(f"PayPal capture returned {resp.status_code}")
        if resp.status_code >= 400:
            logger.warning(
                "PayPal capture for %s rejected: %s %s", payment_id, resp.status_code, _issue(resp)
            )
            return PaymentCapture(status=FAILED, payment_id=payment_id)

        return _parse_capture(payment_id, resp.json())


def _issue(resp: httpx.Response) -> str | None:
    try:
        details = resp.json().get("details") or []
    except ValueError:
        return None
    return details[0].get("issue") if details else None


def _parse_capture(payment_id: str, body: dict) -> PaymentCapture:
    unit = (body.get("purchase_units") or [{}])[0]
    captures = (unit.get("payments") or {}).get("captures") or [{}]
    capture = captures[0]
    amount = (capture.get("amount") or unit.get("amount") or {}).get("value")
    status = COMPLETED if body.get("status") == COMPLETED else FAILED
    return PaymentCapture(
        status=status,
        payment_id=payment_id,
        amount=Decimal(amount) if amount is not None else None,
        order_id=unit.get("custom_id") or capture.get("custom_id"),
    )


def build_payment_provider(
    name: str,
    *,
    client_id: str = "",
    client_secret: str = "",
    base_url: str = "https://api-m.sandbox.paypal.com",
) -> PaymentProvider:
    if name == "paypal":
        return PayPalPaymentProvider(client_id, client_secret, base_url)
    if name == "mock":
        return MockPaymentProvider()
    raise ValueError(f"Unknown PAYMENT_PROVIDER: {name}")
