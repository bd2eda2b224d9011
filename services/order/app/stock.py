"""
Order Service — 在庫引き落とし Saga

複数 SKU の引き落としは全体としては原子的ではない。
SKU ごとの引き落としは台帳側で原子的に行い、集合としては Saga で扱う。

  1. 明細を SKU ごとに合算し、SKU 昇順に並べる（ロック順序を固定）
  2. 各 SKU に try_decrement(sku, qty, order_id)
  3. 途中で失敗したら、この試行で適用した分だけを逆順に increment で戻し、
     元の例外を送出する（呼び出し元は半端な状態を観測しない）

  A ─ ok ─▶ B ─ 在庫不足 ─▶ 補償: A を戻す ─▶ InsufficientStock(B)
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Protocol

from services.shared.errors import InsufficientStock, NotFoundError

from .events import OrderItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decrement:
    sku: str
    quantity: int
    applied: bool


class StockLedger(Protocol):
    async def try_decrement(self, sku: str, qty: int, order_id: str) -> Decrement: ...

    async def increment(self, sku: str, qty: int, order_id: str) -> int: ...


def plan_decrements(items: list[OrderItem] | tuple[OrderItem, ...]) -> list[tuple[str, int]]:
    """SKU ごとに数量を合算し、SKU 昇順で返す。"""
    merged: dict[str, int] = {}
    for item in items:
        merged[item.sku] = merged.get(item.sku, 0) + item.qty
    return sorted(merged.items())


async def apply_order_stock(
    ledger: StockLedger,
    order_id: str,
    items: list[OrderItem] | tuple[OrderItem, ...],
) -> list[Decrement]:
    applied: OrderedDict[str, int] = OrderedDict()
    results: list[Decrement] = []

    for sku, qty in plan_decrements(items):
        try:
            result = await ledger.try_decrement(sku, qty, order_id)
        except Exception as e:
            logger.warning(
                "Stock decrement failed for order %s on %s (%s), compensating %d SKU(s)",
                order_id,
                sku,
                e,
                len(applied),
            )
            await _compensate(ledger, order_id, applied)
            if isinstance(e, NotFoundError):
                # 台帳に無い SKU は在庫 0 として扱い、注文は pending のまま報告する
                raise InsufficientStock(sku, qty, 0) from e
            raise
        if result.applied:
            applied[sku] = qty
        results.append(result)

    return results


async def compensate_order_stock(
    ledger: StockLedger,
    order_id: str,
    decrements: list[Decrement],
    items: list[OrderItem] | tuple[OrderItem, ...],
) -> None:
    """適用済みの引き落としを戻す（完了の記録に失敗した場合に使う）。"""
    planned = dict(plan_decrements(items))
    applied = OrderedDict(
        (d.sku, planned[d.sku]) for d in decrements if d.applied and d.sku in planned
    )
    await _compensate(ledger, order_id, applied)


async def _compensate(
    ledger: StockLedger,
    order_id: str,
    applied: OrderedDict[str, int],
) -> None:
    for sku, qty in reversed(applied.items()):
        try:
            await ledger.increment(sku, qty, order_id)
        except Exception:
            # 補償に失敗したマーカーは台帳に残る。再度の complete が同じ SKU を
            # 適用済みと見なすので二重引き落としにはならない。
            logger.exception(
                "Compensation failed for order %s on %s (%d unit(s)); manual reconciliation required",
                order_id,
                sku,
                qty,
            )
            continue
        logger.info("Compensated %d unit(s) of %s for order %s", qty, sku, order_id)
