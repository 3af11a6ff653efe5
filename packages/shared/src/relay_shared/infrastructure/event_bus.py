"""Fanout event bus over an AMQP broker.

Publishing goes to a durable fanout exchange. A durable named queue bound to
that exchange holds events for consumers that must not miss anything across
their own restarts (the sync worker); a per-process exclusive queue gives a
live view to consumers that only care while running (the query API).

Broker trouble never propagates to callers. Connecting uses a bounded retry
with a fixed delay; when the attempts are exhausted the bus goes into
degraded mode and publish/subscribe become no-ops.
"""

import asyncio
import inspect
import socket
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import backoff
import structlog
from kombu import Connection, Consumer, Exchange, Producer, Queue

from ..domain.events import StreamEvent
from ..domain.exceptions import EventBusError, MalformedEventError
from .config import Settings

logger = structlog.get_logger(__name__)

EventHandler = Callable[[StreamEvent], Union[None, Awaitable[None]]]


class EventPublisher(Protocol):
    """Anything that can broadcast a stream event."""

    async def publish(self, event: StreamEvent) -> None:
        ...


@dataclass
class Subscription:
    """A handler bound to the queue it consumes from."""

    handler: EventHandler
    queue: Queue
    durable: bool


class EventBus:
    """Durable fanout publish/subscribe with degraded-mode fallback."""

    def __init__(
        self,
        settings: Settings,
        *,
        service_name: str = "relay",
        connection_factory: Optional[Callable[[], Connection]] = None,
    ):
        self.settings = settings
        self.service_name = service_name
        self._connection_factory = connection_factory or (
            lambda: Connection(settings.broker_url)
        )

        self.exchange = Exchange(settings.events_exchange, type="fanout", durable=True)
        self.durable_queue = Queue(
            settings.events_queue,
            exchange=self.exchange,
            routing_key="",
            durable=True,
        )

        self._connection: Optional[Connection] = None
        self._producer: Optional[Producer] = None
        self._publish_lock = asyncio.Lock()
        self._degraded = False

        self._subscriptions: list[Subscription] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._consumer_thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def connected(self) -> bool:
        return self._producer is not None and not self._degraded

    def _retrying(self, operation: Callable[[], Any]) -> Callable[[], Any]:
        """Wrap a blocking broker operation in the bounded retry policy."""
        return backoff.on_exception(
            backoff.constant,
            Exception,
            max_tries=self.settings.broker_connect_attempts,
            interval=self.settings.broker_retry_delay_seconds,
            jitter=None,
            on_backoff=self._log_retry,
        )(operation)

    def _log_retry(self, details: dict) -> None:
        logger.warning(
            "broker_connect_failed",
            service=self.service_name,
            attempt=details["tries"],
            retries_left=self.settings.broker_connect_attempts - details["tries"],
            error=str(details.get("exception")),
        )

    def _declare_topology(self, channel) -> None:
        """Declare the exchange and bind the durable queue to it."""
        self.exchange(channel).declare()
        self.durable_queue(channel).declare()

    def _open_publisher(self) -> None:
        logger.info("broker_connecting", service=self.service_name)
        connection = self._connection_factory()
        connection.ensure_connection(max_retries=1)
        channel = connection.channel()
        self._declare_topology(channel)
        self._connection = connection
        self._producer = Producer(channel, exchange=self.exchange)

    async def connect(self) -> bool:
        """Connect the publishing side.

        Returns:
            bool: True when connected, False when the bus is degraded
        """
        try:
            await asyncio.to_thread(self._retrying(self._open_publisher))
        except Exception as e:
            self._enter_degraded(EventBusError(f"Could not connect to broker: {e}"))
            return False
        self._loop = asyncio.get_running_loop()
        logger.info("broker_connected", service=self.service_name)
        return True

    def _enter_degraded(self, error: EventBusError) -> None:
        self._degraded = True
        self._producer = None
        logger.error(
            "event_bus_degraded",
            service=self.service_name,
            attempts=self.settings.broker_connect_attempts,
            error=str(error),
        )

    async def publish(self, event: StreamEvent) -> None:
        """Broadcast an event to every subscriber.

        A no-op when the bus is degraded or not connected; failures are
        logged and never raised.
        """
        if self._producer is None:
            logger.warning(
                "event_not_published",
                event_type=event.event_type.value,
                stream_key=event.stream_key,
                degraded=self._degraded,
            )
            return

        body = event.to_message()
        async with self._publish_lock:
            try:
                await asyncio.to_thread(self._publish_blocking, body)
            except Exception as e:
                logger.error(
                    "event_publish_failed",
                    event_type=event.event_type.value,
                    stream_key=event.stream_key,
                    error=str(e),
                )
                return
        logger.info(
            "event_published",
            event_type=event.event_type.value,
            stream_key=event.stream_key,
        )

    def _publish_blocking(self, body: dict) -> None:
        self._producer.publish(
            body,
            exchange=self.exchange,
            routing_key="",
            serializer="json",
            delivery_mode=2,
            declare=[self.exchange, self.durable_queue],
            retry=True,
            retry_policy={
                "max_retries": self.settings.broker_connect_attempts,
                "interval_start": self.settings.broker_retry_delay_seconds,
                "interval_step": 0,
                "interval_max": self.settings.broker_retry_delay_seconds,
            },
        )

    def subscribe(self, handler: EventHandler, *, durable: bool = False) -> Optional[Subscription]:
        """Register a handler invoked once per delivered event.

        Args:
            handler: Sync or async callable taking a StreamEvent
            durable: Consume the shared durable queue instead of a live,
                per-process queue

        Returns:
            The subscription, or None when the bus is degraded
        """
        if self._degraded:
            logger.warning("subscribe_skipped_degraded", service=self.service_name)
            return None

        if durable:
            queue = self.durable_queue
        else:
            queue = Queue(
                f"{self.settings.events_queue}.{self.service_name}.{uuid.uuid4().hex[:8]}",
                exchange=self.exchange,
                routing_key="",
                durable=False,
                exclusive=True,
                auto_delete=True,
            )
        subscription = Subscription(handler=handler, queue=queue, durable=durable)
        self._subscriptions.append(subscription)
        logger.info("subscribed", queue=queue.name, durable=durable)
        return subscription

    async def start_consuming(self) -> None:
        """Start delivering events to subscribers on a background thread."""
        if self._degraded or not self._subscriptions:
            return
        if self._consumer_thread is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._stopping.clear()
        self._consumer_thread = threading.Thread(
            target=self._consume_forever,
            name=f"{self.service_name}-event-consumer",
            daemon=True,
        )
        self._consumer_thread.start()

    def _consume_forever(self) -> None:
        while not self._stopping.is_set():
            try:
                connection = self._retrying(self._open_consumer_connection)()
            except Exception as e:
                self._enter_degraded(EventBusError(f"Consumer could not connect: {e}"))
                return
            try:
                self._drain(connection)
            except Exception as e:
                if self._stopping.is_set():
                    break
                logger.error("consumer_connection_lost", error=str(e))
            finally:
                connection.release()

    def _open_consumer_connection(self) -> Connection:
        connection = self._connection_factory()
        connection.ensure_connection(max_retries=1)
        return connection

    def _drain(self, connection: Connection) -> None:
        channel = connection.channel()
        self._declare_topology(channel)
        consumers = []
        for subscription in self._subscriptions:
            consumer = Consumer(
                channel,
                queues=[subscription.queue],
                callbacks=[self._callback_for(subscription)],
                accept=["json"],
                prefetch_count=1,
            )
            consumer.consume()
            consumers.append(consumer)
        logger.info("consuming", queues=[s.queue.name for s in self._subscriptions])

        try:
            while not self._stopping.is_set():
                try:
                    connection.drain_events(timeout=self.settings.broker_poll_timeout_seconds)
                except socket.timeout:
                    continue
        finally:
            for consumer in consumers:
                try:
                    consumer.cancel()
                except Exception as e:
                    logger.debug("consumer_cancel_failed", error=str(e))

    def _callback_for(self, subscription: Subscription) -> Callable[[Any, Any], None]:
        def callback(body: Any, message: Any) -> None:
            self._on_message(subscription, body, message)

        return callback

    def _on_message(self, subscription: Subscription, body: Any, message: Any) -> None:
        """Handle one delivery on the consumer thread."""
        try:
            event = StreamEvent.from_message(body)
        except MalformedEventError as e:
            logger.warning("malformed_event_dropped", error=str(e))
            message.ack()
            return

        logger.info(
            "event_received",
            event_type=event.event_type.value,
            stream_key=event.stream_key,
        )
        future = asyncio.run_coroutine_threadsafe(
            _invoke(subscription.handler, event), self._loop
        )
        try:
            future.result()
        except Exception as e:
            logger.error(
                "event_handler_failed",
                event_type=event.event_type.value,
                stream_key=event.stream_key,
                error=str(e),
            )
            if subscription.durable:
                # One redelivery, then give up on the message.
                message.reject(requeue=not message.delivery_info.get("redelivered", False))
                return
        message.ack()

    async def close(self) -> None:
        """Stop consuming and release connections."""
        self._stopping.set()
        if self._consumer_thread is not None:
            await asyncio.to_thread(
                self._consumer_thread.join,
                self.settings.broker_poll_timeout_seconds * 2,
            )
            self._consumer_thread = None
        if self._connection is not None:
            self._connection.release()
            self._connection = None
        self._producer = None
        logger.info("event_bus_closed", service=self.service_name)


async def _invoke(handler: EventHandler, event: StreamEvent) -> None:
    result = handler(event)
    if inspect.isawaitable(result):
        await result
