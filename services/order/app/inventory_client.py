"""
Order Service — Inventory Service クライアント

在庫台帳への直接 HTTP 呼び出し（サービストークンで認証）。
共有ストレージは使わない。ステータスコードを例外に戻す:

  409 → InsufficientStock      404 → NotFoundError
  5xx / 接続失敗 → バックオフ付きリトライ → TransientStoreError
"""

import logging

import httpx

from services.shared.errors import (
    FulfillmentError,
    InsufficientStock,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)
from services.shared.retry import RetryConfig, retry_async

from .stock import Decrement

logger = logging.getLogger(__name__)


class _RetryableResponse(Exception):
    pass


class InventoryClient:
    def __init__(
        self,
        base_url: str,
        service_token: str,
        *,
        client: httpx.AsyncClient | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {service_token}"}
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._retry = retry or RetryConfig(max_retries=3, initial_delay=0.2, max_delay=5.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def try_decrement(self, sku: str, qty: int, order_id: str) -> Decrement:
        body = await self._post(
            f"/commands/inventory/{sku}/decrement", {"qty": qty, "order_id": order_id}
        )
        return Decrement(sku=body["sku"], quantity=body["quantity"], applied=body["applied"])

    async def increment(self, sku: str, qty: int, order_id: str) -> int:
        body = await self._post(
            f"/commands/inventory/{sku}/increment", {"qty": qty, "order_id": order_id}
        )
        return body["quantity"]

    async def _post(self, path: str, payload: dict) -> dict:
        async def _send() -> httpx.Response:
            resp = await self._client.post(
                f"{self.base_url}{path}", json=payload, headers=self._headers
            )
            if resp.status_code >= 500:
                raise _RetryableResponse(f"{resp.status_code} from inventory service")
            return resp

        try:
            resp = await retry_async(
                _send,
                config=self._retry,
                retry_on=(httpx.TransportError, _RetryableResponse),
                description=f"POST {path}",
            )
        except (httpx.TransportError, _RetryableResponse) as e:
            raise TransientStoreError(f"Inventory service unavailable: {e}") from e

        if resp.status_code == 200:
            return resp.json()

        detail = _detail(resp)
        if resp.status_code == 409:
            raise InsufficientStock(detail["sku"], detail["requested"], detail["available"])
        if resp.status_code == 404:
            raise NotFoundError(detail.get("detail", "Product not found"))
        if resp.status_code == 422:
            raise ValidationError(str(detail.get("detail", "Invalid stock request")))
        raise FulfillmentError(
            f"Unexpected {resp.status_code} from inventory service: {detail.get('detail')}"
        )


def _detail(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"detail": resp.text}
    return body if isinstance(body, dict) else {"detail": body}
