"""
Shared — 指数バックオフ付きリトライ

ブローカー・ストア・他サービスへの呼び出しで発生する一時的障害を
上限付きでリトライする。上限に達したら最後の例外をそのまま送出する。
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """attempt 回目 (0 始まり) の失敗後に待つ秒数。"""
    delay = min(config.initial_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay += delay * config.jitter * random.random()
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    config: RetryConfig,
    retry_on: tuple[type[BaseException], ...],
    description: str = "operation",
) -> T:
    """
    operation を実行し、retry_on の例外ならバックオフしてやり直す。

    max_retries=3 なら最大 4 回実行する（初回 + リトライ 3 回）。
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt >= config.max_retries:
                logger.error(
                    "%s failed after %d attempts: %s", description, attempt + 1, e
                )
                raise
            delay = calculate_backoff(attempt, config)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                description,
                attempt + 1,
                config.max_retries + 1,
                delay,
                e,
            )
            await asyncio.sleep(delay)
            attempt += 1
