"""
Inventory Service — FastAPI エントリーポイント

在庫台帳 (Inventory Ledger) サービス。inventory テーブルを専有する。
在庫の変更は try_decrement / increment（補償）/ 入荷 だけを通す。
"""

import os
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.shared.auth import Principal, bearer_token, build_authenticator, ensure_admin
from services.shared.db import create_schema
from services.shared.errors import install_error_handlers
from services.shared.logging_config import configure_logging

from . import commands, queries, schema

DATABASE_URL = os.environ["DATABASE_URL"]
AUTH_BACKEND = os.environ.get("AUTH_BACKEND", "keycloak")
AUTH_STATIC_TOKENS = os.environ.get("AUTH_STATIC_TOKENS", "")
KEYCLOAK_URL = os.environ.get("KEYCLOAK_URL", "http://localhost:8080")
KEYCLOAK_REALM = os.environ.get("KEYCLOAK_REALM", "marketplace")
KEYCLOAK_ADMIN_ROLE = os.environ.get("KEYCLOAK_ADMIN_ROLE", "admin")
LOCK_TIMEOUT_MS = int(os.environ.get("LOCK_TIMEOUT_MS", "2000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)
authenticator = build_authenticator(
    AUTH_BACKEND,
    static_tokens=AUTH_STATIC_TOKENS,
    keycloak_url=KEYCLOAK_URL,
    keycloak_realm=KEYCLOAK_REALM,
    admin_role=KEYCLOAK_ADMIN_ROLE,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(LOG_LEVEL, json_output=LOG_FORMAT == "json")
    await create_schema(engine, schema.STATEMENTS)
    yield
    await authenticator.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


async def current_principal(token: str = Depends(bearer_token)) -> Principal:
    return await authenticator.verify(token)


# ── Request Models ───────────────────────────────


class DecrementRequest(BaseModel):
    qty: int
    order_id: str | None = None


class IncrementRequest(BaseModel):
    qty: int
    order_id: str | None = None


class ReceiveStockRequest(BaseModel):
    qty: int = Field(ge=0)
    name: str | None = None
    price: Decimal | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/inventory/{sku}/decrement")
async def cmd_decrement(
    sku: str,
    req: DecrementRequest,
    principal: Principal = Depends(current_principal),
):
    """在庫引き落としコマンド（在庫不足は 409）"""
    ensure_admin(principal)
    async with async_session() as session:
        return await commands.try_decrement(
            session, sku, req.qty, req.order_id, lock_timeout_ms=LOCK_TIMEOUT_MS
        )


@app.post("/commands/inventory/{sku}/increment")
async def cmd_increment(
    sku: str,
    req: IncrementRequest,
    principal: Principal = Depends(current_principal),
):
    """在庫戻しコマンド（補償トランザクション）"""
    ensure_admin(principal)
    async with async_session() as session:
        quantity = await commands.increment(
            session, sku, req.qty, req.order_id, lock_timeout_ms=LOCK_TIMEOUT_MS
        )
        return {"sku": sku, "quantity": quantity}


@app.put("/commands/inventory/{sku}")
async def cmd_receive_stock(
    sku: str,
    req: ReceiveStockRequest,
    principal: Principal = Depends(current_principal),
):
    """入荷コマンド（管理者のみ）"""
    ensure_admin(principal)
    async with async_session() as session:
        quantity = await commands.receive_stock(session, sku, req.qty, req.name, req.price)
        return {"sku": sku, "quantity": quantity}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/inventory/search")
async def query_search(q: str = ""):
    """SKU・商品名で在庫を検索"""
    async with async_session() as session:
        return await queries.search_stock(session, q)


@app.get("/queries/inventory/applications/{order_id}")
async def query_applications(
    order_id: str,
    principal: Principal = Depends(current_principal),
):
    """注文に適用済みの引き落とし一覧（監査用）"""
    ensure_admin(principal)
    async with async_session() as session:
        return await queries.list_applications(session, order_id)


@app.get("/queries/inventory/{sku}")
async def query_get_stock(sku: str):
    async with async_session() as session:
        record = await queries.get_stock(session, sku)
        if not record:
            raise HTTPException(404, "Product not found")
        return record


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
