"""
Fulfillment Service — Order Service クライアント

呼び出し元のトークン（またはサービストークン）をそのまま転送する。
認可の判定は Order Service が行う。
"""

import logging
from dataclasses import dataclass, field

import httpx

from services.shared.errors import (
    AuthenticationError,
    AuthorizationError,
    Conflict,
    FulfillmentError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from services.shared.retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

_STATUS_ERRORS = {
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: Conflict,
    422: ValidationError,
}


class _RetryableResponse(Exception):
    pass


@dataclass
class CompletionResult:
    order: dict
    blocked_skus: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return not self.blocked_skus and self.order.get("status") == "completed"


class OrderServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._retry = retry or RetryConfig(max_retries=3, initial_delay=0.2, max_delay=5.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(self, order_id: str, token: str) -> dict:
        resp = await self._request("GET", f"/queries/orders/{order_id}", token)
        return self._body_or_raise(resp)

    async def complete(
        self, order_id: str, token: str, payment_id: str | None = None
    ) -> CompletionResult:
        """在庫不足 (409 + blocked_skus) は例外ではなく結果として返す。"""
        resp = await self._request(
            "POST",
            f"/commands/orders/{order_id}/complete",
            token,
            json={"payment_id": payment_id},
        )
        if resp.status_code == 409:
            body = _json(resp)
            if body.get("blocked_skus"):
                return CompletionResult(order=body["order"], blocked_skus=body["blocked_skus"])
        return CompletionResult(order=self._body_or_raise(resp))

    async def cancel(self, order_id: str, token: str, reason: str) -> dict:
        resp = await self._request(
            "POST",
            f"/commands/orders/{order_id}/cancel",
            token,
            json={"reason": reason},
        )
        return self._body_or_raise(resp)

    async def _request(self, method: str, path: str, token: str, **kwargs) -> httpx.Response:
        async def _send() -> httpx.Response:
            resp = await self._client.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
            if resp.status_code >= 500:
                raise _RetryableResponse(f"{resp.status_code} from order service")
            return resp

        try:
            return await retry_async(
                _send,
                config=self._retry,
                retry_on=(httpx.TransportError, _RetryableResponse),
                description=f"{method} {path}",
            )
        except (httpx.TransportError, _RetryableResponse) as e:
            raise TransientError(f"Order service unavailable: {e}") from e

    @staticmethod
    def _body_or_raise(resp: httpx.Response) -> dict:
        if resp.status_code < 400:
            return resp.json()
        body = _json(resp)
        error = _STATUS_ERRORS.get(resp.status_code, FulfillmentError)
        raise error(str(body.get("detail", resp.text)))


def _json(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"detail": resp.text}
    return body if isinstance(body, dict) else {"detail": body}
