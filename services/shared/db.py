"""
Shared — データベース補助

各サービスは独自の DB を持つ（Database per Service パターン）。
ここにはスキーマ適用・ロック待ちタイムアウト・一時的障害の判定だけを置く。
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

# lock_not_available / serialization_failure / deadlock_detected
_TRANSIENT_SQLSTATES = {"55P03", "40001", "40P01"}


async def create_schema(engine: AsyncEngine, statements: Iterable[str]) -> None:
    async with engine.begin() as conn:
        for ddl in statements:
            await conn.execute(text(ddl))


async def apply_lock_timeout(session: AsyncSession, timeout_ms: int) -> None:
    """
    行ロック待ちの上限を設定する（PostgreSQL のみ、現在のトランザクション内で有効）。
    SQLite は接続の busy timeout が同じ役割を果たす。
    """
    if session.get_bind().dialect.name == "postgresql":
        await session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))


def is_transient(error: DBAPIError) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)) or error.connection_invalidated:
        return True
    sqlstate = getattr(error.orig, "sqlstate", None) or getattr(error.orig, "pgcode", None)
    return sqlstate in _TRANSIENT_SQLSTATES


@asynccontextmanager
async def transient_store_errors(session: AsyncSession) -> AsyncIterator[None]:
    """ロックタイムアウトや接続断を TransientStoreError に変換し、ロールバックする。"""
    try:
        yield
    except DBAPIError as e:
        if not is_transient(e):
            raise
        await session.rollback()
        logger.warning("Transient store failure: %s", e.orig)
        raise TransientStoreError(f"Store temporarily unavailable: {e.orig}") from e
