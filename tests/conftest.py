"""
Shared pytest fixtures for the fulfillment services.

The service modules read their configuration at import time, so the
environment is fixed here before any of them is imported: static bearer
tokens, the in-memory bus and the mock payment provider.

Store-backed fixtures use file-based SQLite through aiosqlite so that
concurrent sessions really contend for the same rows.
"""

from __future__ import annotations

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["INVENTORY_SERVICE_URL"] = "http://inventory.test"
os.environ["ORDER_SERVICE_URL"] = "http://order.test"
os.environ["SERVICE_TOKEN"] = "service-token"
os.environ["AUTH_BACKEND"] = "static"
os.environ["AUTH_STATIC_TOKENS"] = (
    "u1-token:u1,u2-token:u2,admin-token:ops:admin,service-token:fulfillment:admin"
)
os.environ["BUS_BACKEND"] = "memory"
os.environ["PAYMENT_PROVIDER"] = "mock"

from collections.abc import AsyncGenerator, Awaitable, Callable  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from services.inventory.app import commands as inventory_commands  # noqa: E402
from services.inventory.app import queries as inventory_queries  # noqa: E402
from services.inventory.app import schema as inventory_schema  # noqa: E402
from services.order.app import schema as order_schema  # noqa: E402
from services.order.app.stock import Decrement  # noqa: E402
from services.shared.auth import Principal  # noqa: E402
from services.shared.bus import InMemoryEventBus  # noqa: E402
from services.shared.db import create_schema  # noqa: E402

U1 = Principal("u1")
U2 = Principal("u2")
ADMIN = Principal("ops", is_admin=True)


class DirectLedger:
    """Inventory commands called in-process, in place of the HTTP client."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory
        self.decrement_calls: list[tuple[str, int, str]] = []
        self.increment_calls: list[tuple[str, int, str]] = []

    async def try_decrement(self, sku: str, qty: int, order_id: str) -> Decrement:
        self.decrement_calls.append((sku, qty, order_id))
        async with self.session_factory() as session:
            result = await inventory_commands.try_decrement(session, sku, qty, order_id)
        return Decrement(sku=result.sku, quantity=result.quantity, applied=result.applied)

    async def increment(self, sku: str, qty: int, order_id: str) -> int:
        self.increment_calls.append((sku, qty, order_id))
        async with self.session_factory() as session:
            return await inventory_commands.increment(session, sku, qty, order_id)


@pytest_asyncio.fixture
async def inventory_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh inventory database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventory.db'}")
    await create_schema(engine, inventory_schema.STATEMENTS)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def order_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to a fresh order database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await create_schema(engine, order_schema.STATEMENTS)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def ledger(inventory_sessions: async_sessionmaker) -> DirectLedger:
    return DirectLedger(inventory_sessions)


@pytest.fixture
def memory_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def seed_stock(
    inventory_sessions: async_sessionmaker,
) -> Callable[..., Awaitable[int]]:
    """Receive stock for a SKU and return the resulting quantity."""

    async def _seed(sku: str, qty: int, name: str = "") -> int:
        async with inventory_sessions() as session:
            return await inventory_commands.receive_stock(session, sku, qty, name or sku)

    return _seed


@pytest.fixture
def stock_of(inventory_sessions: async_sessionmaker) -> Callable[[str], Awaitable[int]]:
    """Current quantity of a SKU straight from the ledger."""

    async def _stock_of(sku: str) -> int:
        async with inventory_sessions() as session:
            record = await inventory_queries.get_stock(session, sku)
        assert record is not None, f"{sku} missing from inventory"
        return record.quantity

    return _stock_of
