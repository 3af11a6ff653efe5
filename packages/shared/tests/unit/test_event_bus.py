"""Tests for the fanout event bus adapter."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from relay_shared.domain.events import EndReason, StreamEvent
from relay_shared.infrastructure.event_bus import EventBus


def _unreachable_broker():
    raise ConnectionRefusedError("broker down")


@pytest.fixture
def connected_bus(test_settings):
    """A bus whose broker connection and producer are mocks."""
    connection = MagicMock()
    bus = EventBus(test_settings, service_name="test", connection_factory=lambda: connection)
    with patch.object(EventBus, "_declare_topology"), patch(
        "relay_shared.infrastructure.event_bus.Producer"
    ) as producer_cls:
        yield bus, producer_cls.return_value


def _message(redelivered: bool = False) -> MagicMock:
    message = MagicMock()
    message.delivery_info = {"redelivered": redelivered}
    return message


class TestTopology:
    """Test exchange and queue declarations."""

    def test_fanout_exchange_and_durable_queue(self, test_settings):
        bus = EventBus(test_settings)

        assert bus.exchange.name == "stream_events_fanout"
        assert bus.exchange.type == "fanout"
        assert bus.exchange.durable is True
        assert bus.durable_queue.name == "stream_events"
        assert bus.durable_queue.durable is True
        assert bus.durable_queue.exchange.name == bus.exchange.name

    def test_live_subscriptions_get_private_queues(self, test_settings):
        bus = EventBus(test_settings, service_name="api")

        first = bus.subscribe(lambda event: None)
        second = bus.subscribe(lambda event: None)

        assert first.queue.name != second.queue.name
        assert first.queue.name.startswith("stream_events.api.")
        assert first.queue.exclusive is True
        assert first.queue.auto_delete is True
        assert first.durable is False

    def test_durable_subscription_uses_shared_queue(self, test_settings):
        bus = EventBus(test_settings, service_name="worker")

        subscription = bus.subscribe(lambda event: None, durable=True)

        assert subscription.queue is bus.durable_queue
        assert subscription.durable is True


@pytest.mark.asyncio
class TestDegradedMode:
    """Test behaviour when the broker cannot be reached."""

    async def test_connect_gives_up_after_bounded_attempts(self, test_settings):
        factory = MagicMock(side_effect=_unreachable_broker)
        bus = EventBus(test_settings, connection_factory=factory)

        connected = await bus.connect()

        assert connected is False
        assert bus.degraded is True
        assert bus.connected is False
        assert factory.call_count == test_settings.broker_connect_attempts

    async def test_publish_is_noop_when_degraded(self, test_settings):
        bus = EventBus(test_settings, connection_factory=_unreachable_broker)
        await bus.connect()

        await bus.publish(StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8"))

    async def test_subscribe_is_noop_when_degraded(self, test_settings):
        bus = EventBus(test_settings, connection_factory=_unreachable_broker)
        await bus.connect()

        assert bus.subscribe(lambda event: None) is None
        await bus.start_consuming()
        assert bus._consumer_thread is None

    async def test_publish_before_connect_is_noop(self, test_settings):
        bus = EventBus(test_settings)

        await bus.publish(StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8"))

        assert bus.degraded is False


@pytest.mark.asyncio
class TestPublish:
    """Test publishing on a healthy connection."""

    async def test_connect_recovers_after_transient_failure(self, test_settings):
        connection = MagicMock()
        factory = MagicMock(side_effect=[ConnectionRefusedError("starting"), connection])
        bus = EventBus(test_settings, connection_factory=factory)

        with patch.object(EventBus, "_declare_topology"), patch(
            "relay_shared.infrastructure.event_bus.Producer"
        ):
            connected = await bus.connect()

        assert connected is True
        assert bus.connected is True
        assert factory.call_count == 2

    async def test_publish_sends_persistent_json(self, connected_bus):
        bus, producer = connected_bus
        await bus.connect()

        await bus.publish(StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8"))

        producer.publish.assert_called_once()
        body = producer.publish.call_args.args[0]
        kwargs = producer.publish.call_args.kwargs
        assert body["eventType"] == "STREAM_STARTED"
        assert body["streamKey"] == "abc"
        assert kwargs["serializer"] == "json"
        assert kwargs["delivery_mode"] == 2
        assert kwargs["exchange"] is bus.exchange
        assert bus.durable_queue in kwargs["declare"]

    async def test_publish_keeps_order(self, connected_bus):
        bus, producer = connected_bus
        await bus.connect()

        await bus.publish(StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8"))
        await bus.publish(StreamEvent.stream_ended("abc", 5, EndReason.STOP_REQUESTED))

        types = [c.args[0]["eventType"] for c in producer.publish.call_args_list]
        assert types == ["STREAM_STARTED", "STREAM_ENDED"]

    async def test_publish_failure_is_swallowed(self, connected_bus):
        bus, producer = connected_bus
        await bus.connect()
        producer.publish.side_effect = ConnectionResetError("lost")

        await bus.publish(StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8"))

        assert bus.degraded is False


@pytest.mark.asyncio
class TestDelivery:
    """Test message dispatch from the consumer thread onto the loop."""

    async def test_valid_event_reaches_handler_then_acks(self, test_settings):
        bus = EventBus(test_settings)
        bus._loop = asyncio.get_running_loop()
        handler = AsyncMock()
        subscription = bus.subscribe(handler)
        message = _message()
        body = StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8").to_message()

        await asyncio.to_thread(bus._on_message, subscription, body, message)

        handler.assert_awaited_once()
        assert handler.await_args.args[0].stream_key == "abc"
        message.ack.assert_called_once()

    async def test_sync_handler_supported(self, test_settings):
        bus = EventBus(test_settings)
        bus._loop = asyncio.get_running_loop()
        received = []
        subscription = bus.subscribe(received.append)
        body = StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8").to_message()

        await asyncio.to_thread(bus._on_message, subscription, body, _message())

        assert [e.stream_key for e in received] == ["abc"]

    async def test_malformed_message_is_acked_and_dropped(self, test_settings):
        bus = EventBus(test_settings)
        bus._loop = asyncio.get_running_loop()
        handler = AsyncMock()
        subscription = bus.subscribe(handler, durable=True)
        message = _message()

        await asyncio.to_thread(bus._on_message, subscription, {"eventType": "nope"}, message)

        handler.assert_not_awaited()
        message.ack.assert_called_once()
        message.reject.assert_not_called()

    async def test_durable_handler_failure_requeues_once(self, test_settings):
        bus = EventBus(test_settings)
        bus._loop = asyncio.get_running_loop()
        subscription = bus.subscribe(AsyncMock(side_effect=RuntimeError("boom")), durable=True)
        body = StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8").to_message()

        first = _message(redelivered=False)
        await asyncio.to_thread(bus._on_message, subscription, body, first)
        second = _message(redelivered=True)
        await asyncio.to_thread(bus._on_message, subscription, body, second)

        first.reject.assert_called_once_with(requeue=True)
        second.reject.assert_called_once_with(requeue=False)
        first.ack.assert_not_called()
        second.ack.assert_not_called()

    async def test_live_handler_failure_is_acked(self, test_settings):
        bus = EventBus(test_settings)
        bus._loop = asyncio.get_running_loop()
        subscription = bus.subscribe(AsyncMock(side_effect=RuntimeError("boom")))
        message = _message()
        body = StreamEvent.stream_started("abc", "/hls/abc/playlist.m3u8").to_message()

        await asyncio.to_thread(bus._on_message, subscription, body, message)

        message.ack.assert_called_once()
        message.reject.assert_not_called()
