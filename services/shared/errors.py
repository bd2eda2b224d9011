"""
Shared — エラー分類 (Error Taxonomy)

全サービス共通の例外階層。
ドメイン層は例外を送出し、HTTP 層 (install_error_handlers) が
ステータスコードと JSON レスポンスに変換する。

  ValidationError      入力不正。リトライしない (422)
  AuthenticationError  トークンなし・無効 (401)
  AuthorizationError   所有者でも管理者でもない (403)
  NotFoundError        対象が存在しない (404)
  Conflict             不正な状態遷移 (409)
  InsufficientStock    在庫不足。補償後に呼び出し元へ通知 (409)
  TransientError       インフラの一時的障害。バックオフ付きでリトライ (503)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    status_code: int = 500
    retryable: bool = False

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__

    def to_dict(self) -> dict:
        return {
            "error": self.__class__.__name__,
            "detail": self.detail,
            "retryable": self.retryable,
        }


class ValidationError(FulfillmentError):
    status_code = 422


class AuthenticationError(FulfillmentError):
    status_code = 401


class AuthorizationError(FulfillmentError):
    status_code = 403


class NotFoundError(FulfillmentError):
    status_code = 404


class Conflict(FulfillmentError):
    status_code = 409


class InsufficientStock(FulfillmentError):
    """在庫不足（ビジネス上の条件であり、システム障害ではない）"""

    status_code = 409

    def __init__(self, sku: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {sku}: requested={requested}, available={available}"
        )
        self.sku = sku
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(
            {"sku": self.sku, "requested": self.requested, "available": self.available}
        )
        return body


class TransientError(FulfillmentError):
    status_code = 503
    retryable = True


class TransientStoreError(TransientError):
    pass


class TransientBrokerError(TransientError):
    pass


class PublishError(TransientBrokerError):
    pass


def install_error_handlers(app: FastAPI) -> None:
    """FulfillmentError を JSON レスポンスに変換するハンドラを登録する。"""

    @app.exception_handler(FulfillmentError)
    async def _handle_fulfillment_error(request: Request, exc: FulfillmentError):
        if exc.retryable:
            logger.warning(
                "Retryable failure on %s %s: %s",
                request.method,
                request.url.path,
                exc.detail,
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
