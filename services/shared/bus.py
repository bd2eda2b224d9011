"""
Shared — イベントバス・アダプタ (Event Bus Adapter)

永続 Topic Exchange 上の薄い契約。配信保証は at-least-once。

  publish    routing key 付きで発行。durable なら永続メッセージにする
             （ブローカー再起動で未 ACK のメッセージを失わない）
  subscribe  永続キューを routing key で Exchange にバインドし、
             ハンドラの戻り値 (AckDecision) に従って ACK / NACK する

  ┌───────────┐  order.created    ┌──────────────────────┐
  │ publisher │ ─ order.completed ▶ │ marketplace.events   │ (topic)
  └───────────┘  payment.succeeded └─────────┬────────────┘
                                             │ binding
                                  ┌──────────▼───────────┐   NACK_DROP   ┌────────────────┐
                                  │ <queue> (durable)    │ ────────────▶ │ <queue>.dead   │
                                  └──────────────────────┘   via .dlx    └────────────────┘

ハンドラが例外を送出した場合は NACK_DROP (requeue しない)。
ポイズンメッセージの無限ループを避けつつ、Dead Letter Queue と
ERROR ログに残して運用者から見えるようにする。
"""

import asyncio
import enum
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from uuid import uuid4

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError

from .errors import PublishError, TransientBrokerError
from .retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)


class AckDecision(str, enum.Enum):
    ACK = "ack"
    NACK_REQUEUE = "nack_requeue"
    NACK_DROP = "nack_drop"


Handler = Callable[[dict], Awaitable[AckDecision]]


def encode_record(record: dict) -> bytes:
    return json.dumps(record, default=str).encode("utf-8")


def decode_record(payload: bytes) -> dict:
    """ペイロードを dict に戻す。未知のフィールドはそのまま残す（前方互換）。"""
    record = json.loads(payload.decode("utf-8"))
    if not isinstance(record, dict):
        raise ValueError("Event payload must be a JSON object")
    return record


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic の照合: '*' はちょうど 1 語、'#' は 0 語以上。"""

    def _match(p: list[str], k: list[str]) -> bool:
        if not p:
            return not k
        if p[0] == "#":
            return any(_match(p[1:], k[i:]) for i in range(len(k) + 1))
        if not k:
            return False
        if p[0] == "*" or p[0] == k[0]:
            return _match(p[1:], k[1:])
        return False

    return _match(pattern.split("."), routing_key.split("."))


class RabbitMQEventBus:
    """aio-pika (RobustConnection) による実装。"""

    def __init__(
        self,
        url: str,
        exchange_name: str,
        *,
        connect_retry: RetryConfig | None = None,
        publish_retry: RetryConfig | None = None,
        prefetch_count: int = 10,
    ) -> None:
        self.url = url
        self.exchange_name = exchange_name
        self.dlx_name = f"{exchange_name}.dlx"
        self.connect_retry = connect_retry or RetryConfig(
            max_retries=10, initial_delay=1.0, max_delay=30.0
        )
        self.publish_retry = publish_retry or RetryConfig(
            max_retries=5, initial_delay=0.2, max_delay=10.0
        )
        self.prefetch_count = prefetch_count

        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._dlx: AbstractExchange | None = None
        self._subscriptions: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    # ── 接続管理 ─────────────────────────────────

    async def connect(self) -> None:
        """
        ブローカーへ接続し、Exchange を宣言する。

        初回接続は上限付き指数バックオフでリトライ。接続後の切断は
        RobustConnection が再接続し、チャネル・キュー・バインディング・
        コンシューマを自動で復元する。
        """
        async with self._lock:
            if self.is_connected:
                return

            async def _open() -> AbstractRobustConnection:
                return await aio_pika.connect_robust(self.url)

            try:
                self._connection = await retry_async(
                    _open,
                    config=self.connect_retry,
                    retry_on=(AMQPError, ConnectionError, OSError),
                    description="RabbitMQ connect",
                )
            except (AMQPError, ConnectionError, OSError) as e:
                raise TransientBrokerError(f"Failed to connect to RabbitMQ: {e}") from e

            self._connection.reconnect_callbacks.add(self._on_reconnect)
            self._channel = await self._connection.channel()
            await self._channel.set_qos(prefetch_count=self.prefetch_count)
            self._exchange = await self._channel.declare_exchange(
                self.exchange_name, ExchangeType.TOPIC, durable=True
            )
            self._dlx = await self._channel.declare_exchange(
                self.dlx_name, ExchangeType.TOPIC, durable=True
            )
            logger.info("Connected to RabbitMQ, exchange=%s", self.exchange_name)

    def _on_reconnect(self, connection: AbstractRobustConnection) -> None:
        logger.warning(
            "RabbitMQ connection re-established, %d subscription(s) restored",
            len(self._subscriptions),
        )

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchange = None
        self._dlx = None
        self._subscriptions.clear()

    # ── 発行 ─────────────────────────────────────

    async def publish(self, routing_key: str, payload: bytes, durable: bool = True) -> None:
        if not self.is_connected:
            await self.connect()

        message = Message(
            body=payload,
            content_type="application/json",
            message_id=str(uuid4()),
            delivery_mode=DeliveryMode.PERSISTENT if durable else DeliveryMode.NOT_PERSISTENT,
        )

        async def _send() -> None:
            await self._exchange.publish(message, routing_key=routing_key)

        try:
            await retry_async(
                _send,
                config=self.publish_retry,
                retry_on=(AMQPError, ConnectionError, OSError),
                description=f"publish {routing_key}",
            )
        except (AMQPError, ConnectionError, OSError) as e:
            raise PublishError(f"Failed to publish {routing_key}: {e}") from e

    async def publish_json(self, routing_key: str, record: dict, durable: bool = True) -> None:
        await self.publish(routing_key, encode_record(record), durable=durable)

    # ── 購読 ─────────────────────────────────────

    async def subscribe(
        self,
        queue_name: str,
        routing_key: str,
        handler: Handler,
        queue_durable: bool = True,
    ) -> None:
        """
        キューを宣言・バインドしてコンシューマを登録する。
        同じ (queue, routing key) での再呼び出しは何もしない。
        """
        if not self.is_connected:
            await self.connect()

        key = (queue_name, routing_key)
        if key in self._subscriptions:
            return

        dead_queue = await self._channel.declare_queue(f"{queue_name}.dead", durable=True)
        await dead_queue.bind(self._dlx, routing_key=queue_name)

        queue = await self._channel.declare_queue(
            queue_name,
            durable=queue_durable,
            arguments={
                "x-dead-letter-exchange": self.dlx_name,
                "x-dead-letter-routing-key": queue_name,
            },
        )
        await queue.bind(self._exchange, routing_key=routing_key)

        async def _callback(message: AbstractIncomingMessage) -> None:
            await self._process_message(queue_name, handler, message)

        self._subscriptions[key] = await queue.consume(_callback)
        logger.info("Subscribed %s to %s on %s", queue_name, routing_key, self.exchange_name)

    async def _process_message(
        self,
        queue_name: str,
        handler: Handler,
        message: AbstractIncomingMessage,
    ) -> None:
        try:
            record = decode_record(message.body)
        except ValueError:
            logger.error(
                "Dead-lettering undecodable message %s (routing_key=%s, queue=%s)",
                message.message_id,
                message.routing_key,
                queue_name,
            )
            await message.reject(requeue=False)
            return

        try:
            decision = await handler(record)
        except Exception:
            logger.exception(
                "Handler failed for message %s (routing_key=%s, queue=%s), dead-lettering",
                message.message_id,
                message.routing_key,
                queue_name,
            )
            decision = AckDecision.NACK_DROP

        if decision is AckDecision.ACK:
            await message.ack()
        elif decision is AckDecision.NACK_REQUEUE:
            await message.nack(requeue=True)
        else:
            logger.error(
                "Message %s dead-lettered by handler (routing_key=%s, queue=%s)",
                message.message_id,
                message.routing_key,
                queue_name,
                extra={"dead_letter_queue": f"{queue_name}.dead", "record": record},
            )
            await message.reject(requeue=False)


@dataclass
class PublishedMessage:
    routing_key: str
    payload: bytes
    durable: bool

    @property
    def record(self) -> dict:
        return decode_record(self.payload)


@dataclass
class _Subscription:
    queue_name: str
    routing_key: str
    handler: Handler
    durable: bool


@dataclass
class InMemoryEventBus:
    """
    プロセス内で完結するバス（ローカル実行・テスト用）。

    publish は一致する購読者へ同期的に配送する。
    NACK_REQUEUE は requeued に、NACK_DROP は dead_letters に残す。
    """

    published: list[PublishedMessage] = field(default_factory=list)
    requeued: list[tuple[str, PublishedMessage]] = field(default_factory=list)
    dead_letters: list[tuple[str, PublishedMessage]] = field(default_factory=list)
    fail_publishes: int = 0
    _subscriptions: dict[tuple[str, str], _Subscription] = field(default_factory=dict)
    _connected: bool = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False
        self._subscriptions.clear()

    async def publish(self, routing_key: str, payload: bytes, durable: bool = True) -> None:
        if self.fail_publishes > 0:
            self.fail_publishes -= 1
            raise PublishError(f"Failed to publish {routing_key}: broker unavailable")

        message = PublishedMessage(routing_key, payload, durable)
        self.published.append(message)
        for sub in list(self._subscriptions.values()):
            if topic_matches(sub.routing_key, routing_key):
                await self._deliver(sub, message)

    async def publish_json(self, routing_key: str, record: dict, durable: bool = True) -> None:
        await self.publish(routing_key, encode_record(record), durable=durable)

    async def subscribe(
        self,
        queue_name: str,
        routing_key: str,
        handler: Handler,
        queue_durable: bool = True,
    ) -> None:
        self._subscriptions.setdefault(
            (queue_name, routing_key),
            _Subscription(queue_name, routing_key, handler, queue_durable),
        )

    async def redeliver(self) -> None:
        """requeue されたメッセージを再配送する（重複配信の再現にも使う）。"""
        pending, self.requeued = self.requeued, []
        for queue_name, message in pending:
            for sub in list(self._subscriptions.values()):
                if sub.queue_name == queue_name:
                    await self._deliver(sub, message)

    async def _deliver(self, sub: _Subscription, message: PublishedMessage) -> None:
        try:
            record = decode_record(message.payload)
            decision = await sub.handler(record)
        except Exception:
            logger.exception(
                "Handler failed for %s on %s, dead-lettering", message.routing_key, sub.queue_name
            )
            decision = AckDecision.NACK_DROP

        if decision is AckDecision.NACK_REQUEUE:
            self.requeued.append((sub.queue_name, message))
        elif decision is AckDecision.NACK_DROP:
            logger.error(
                "Message %s dead-lettered on %s",
                message.routing_key,
                sub.queue_name,
                extra={"dead_letter_queue": f"{sub.queue_name}.dead"},
            )
            self.dead_letters.append((sub.queue_name, message))

    def messages_for(self, routing_key: str) -> list[dict]:
        return [m.record for m in self.published if m.routing_key == routing_key]


EventBus = RabbitMQEventBus | InMemoryEventBus


def build_event_bus(
    backend: str,
    *,
    url: str = "",
    exchange_name: str = "",
    connect_retries: int = 10,
    publish_retries: int = 5,
) -> EventBus:
    if backend == "rabbitmq":
        return RabbitMQEventBus(
            url,
            exchange_name,
            connect_retry=RetryConfig(max_retries=connect_retries, initial_delay=1.0, max_delay=30.0),
            publish_retry=RetryConfig(max_retries=publish_retries, initial_delay=0.2, max_delay=10.0),
        )
    if backend == "memory":
        return InMemoryEventBus()
    raise ValueError(f"Unknown BUS_BACKEND: {backend}")
