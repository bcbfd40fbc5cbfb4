"""Test broker adapters: embedded hub routing, reconnects, outbound queue and failures."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from lockergw.adapters import EmbeddedBroker, InProcessHub, create_broker, topic_matches
from lockergw.adapters.base import backoff_delay
from lockergw.adapters.mqtt import MqttBroker
from lockergw.config import Config
from lockergw.core.errors import BrokerDisconnected, GatewayConfigurationError

FAST = {"reconnect_min_delay": 0.01, "reconnect_max_delay": 0.05, "send_retry_wait": 0.001}


class Collector:
    """Async handler that records (topic, payload)."""

    def __init__(self):
        self.messages: list[tuple[str, bytes]] = []

    async def __call__(self, topic: str, payload: bytes) -> None:
        self.messages.append((topic, payload))


async def _connected(*brokers: EmbeddedBroker) -> None:
    for broker in brokers:
        await broker.connect()
        assert await broker.wait_connected(1.0)


async def _settle(sender: EmbeddedBroker, receiver: EmbeddedBroker) -> None:
    await sender.join_outbound()
    await receiver.join_inbound()


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.001)


class TestTopicMatching:
    """Test MQTT wildcard matching."""

    @pytest.mark.parametrize(
        "topic,topic_filter,expected",
        [
            ("lockers/send", "lockers/send", True),
            ("lockers/send", "lockers/+", True),
            ("lockers/events/access", "lockers/#", True),
            ("lockers/events/access", "lockers/+", False),
            ("other/send", "lockers/#", False),
            ("lockers/send", "#", True),
        ],
    )
    def test_matches(self, topic, topic_filter, expected):
        assert topic_matches(topic, topic_filter) is expected


class TestBackoff:
    """Test reconnect backoff."""

    def test_exponential_growth(self):
        with patch("lockergw.adapters.base.random.uniform", return_value=1.0):
            assert backoff_delay(1, 5, 60) == 5
            assert backoff_delay(2, 5, 60) == 10
            assert backoff_delay(3, 5, 60) == 20

    def test_capped_at_max(self):
        with patch("lockergw.adapters.base.random.uniform", return_value=1.5):
            assert backoff_delay(10, 5, 60) == 60

    def test_jitter_bounds(self):
        for attempt in range(1, 8):
            delay = backoff_delay(attempt, 1, 30)
            assert 0 < delay <= 30


class TestEmbeddedRouting:
    """Test message routing through the in-process hub."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self):
        # Arrange
        hub = InProcessHub()
        sender = EmbeddedBroker(hub, **FAST)
        receiver = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await receiver.subscribe("lockers/+", collector)
        await _connected(sender, receiver)

        # Act
        sender.publish("lockers/cmd", b'{"cmd": "sync"}')
        await _settle(sender, receiver)

        # Assert
        assert collector.messages == [("lockers/cmd", b'{"cmd": "sync"}')]
        await sender.disconnect()
        await receiver.disconnect()

    @pytest.mark.asyncio
    async def test_fifo_per_subscription(self):
        # Arrange
        hub = InProcessHub()
        sender = EmbeddedBroker(hub, **FAST)
        receiver = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await receiver.subscribe("lockers/send", collector)
        await _connected(sender, receiver)

        # Act
        for i in range(20):
            sender.publish("lockers/send", str(i))
        await _settle(sender, receiver)

        # Assert
        assert [p for _, p in collector.messages] == [str(i).encode() for i in range(20)]
        await sender.disconnect()
        await receiver.disconnect()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_worker(self):
        # Arrange
        hub = InProcessHub()
        sender = EmbeddedBroker(hub, **FAST)
        receiver = EmbeddedBroker(hub, **FAST)
        seen = []

        async def flaky(topic, payload):
            seen.append(payload)
            if payload == b"bad":
                raise RuntimeError("handler blew up")

        await receiver.subscribe("t", flaky)
        await _connected(sender, receiver)

        # Act
        sender.publish("t", b"bad")
        sender.publish("t", b"good")
        await _settle(sender, receiver)

        # Assert
        assert seen == [b"bad", b"good"]
        await sender.disconnect()
        await receiver.disconnect()

    @pytest.mark.asyncio
    async def test_retained_replayed_with_persistence(self):
        # Arrange
        hub = InProcessHub(persistence=True)
        sender = EmbeddedBroker(hub, **FAST)
        await _connected(sender)
        sender.publish("lockers/events/device_online", b"F1", retain=True)
        await sender.join_outbound()

        # Act
        late = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await late.subscribe("lockers/events/#", collector)
        await _connected(late)
        await late.join_inbound()

        # Assert
        assert collector.messages == [("lockers/events/device_online", b"F1")]
        await sender.disconnect()
        await late.disconnect()

    @pytest.mark.asyncio
    async def test_no_replay_without_persistence(self):
        hub = InProcessHub(persistence=False)
        sender = EmbeddedBroker(hub, **FAST)
        await _connected(sender)
        sender.publish("x", b"1", retain=True)
        await sender.join_outbound()

        late = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await late.subscribe("x", collector)
        await _connected(late)
        await late.join_inbound()

        assert collector.messages == []
        await sender.disconnect()
        await late.disconnect()

    @pytest.mark.asyncio
    async def test_empty_retained_payload_clears(self):
        hub = InProcessHub()
        await hub.route("x", b"1", retain=True)
        await hub.route("x", b"", retain=True)

        late = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await late.subscribe("x", collector)
        await _connected(late)
        await late.join_inbound()

        assert collector.messages == []
        await late.disconnect()


class TestReconnect:
    """Test reconnect and resubscribe."""

    @pytest.mark.asyncio
    async def test_reconnects_and_resubscribes_after_drop(self):
        # Arrange
        hub = InProcessHub()
        sender = EmbeddedBroker(hub, **FAST)
        receiver = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await receiver.subscribe("lockers/send", collector)
        await _connected(sender, receiver)

        # Act
        hub.drop([receiver])
        assert not hub.is_attached(receiver)
        await _wait_for(lambda: hub.is_attached(receiver) and receiver.connected)
        sender.publish("lockers/send", b"after")
        await _settle(sender, receiver)

        # Assert
        assert hub.is_attached(receiver)
        assert collector.messages == [("lockers/send", b"after")]
        await sender.disconnect()
        await receiver.disconnect()

    @pytest.mark.asyncio
    async def test_messages_queued_while_disconnected_are_sent(self):
        # Arrange
        hub = InProcessHub()
        receiver = EmbeddedBroker(hub, **FAST)
        collector = Collector()
        await receiver.subscribe("q", collector)
        await _connected(receiver)
        sender = EmbeddedBroker(hub, **FAST)

        # Act
        sender.publish("q", b"early")
        await _connected(sender)
        await _settle(sender, receiver)

        # Assert
        assert collector.messages == [("q", b"early")]
        await sender.disconnect()
        await receiver.disconnect()

    @pytest.mark.asyncio
    async def test_open_failure_retries(self):
        # Arrange
        hub = InProcessHub()
        broker = EmbeddedBroker(hub, **FAST)
        real_open = broker._open
        attempts = []

        async def flaky_open():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("refused")
            await real_open()

        broker._open = flaky_open

        # Act
        await broker.connect()
        ok = await broker.wait_connected(1.0)

        # Assert
        assert ok is True
        assert len(attempts) == 3
        await broker.disconnect()

    @pytest.mark.asyncio
    async def test_connect_twice_is_noop(self):
        broker = EmbeddedBroker(InProcessHub(), **FAST)
        await broker.connect()
        task = broker._supervisor_task
        await broker.connect()
        assert broker._supervisor_task is task
        await broker.disconnect()

    @pytest.mark.asyncio
    async def test_wait_connected_timeout(self):
        broker = EmbeddedBroker(InProcessHub(), **FAST)
        assert await broker.wait_connected(0.01) is False


class TestOutboundFailures:
    """Test bounded queue and explicit delivery failures."""

    @pytest.mark.asyncio
    async def test_queue_full_raises(self):
        # Arrange
        broker = EmbeddedBroker(InProcessHub(), queue_size=1, **FAST)
        broker.publish("t", b"1")

        # Act & Assert
        with pytest.raises(BrokerDisconnected) as exc_info:
            broker.publish("t", b"2")
        assert exc_info.value.code == "queue_full"

    @pytest.mark.asyncio
    async def test_disconnect_reports_unsent(self):
        # Arrange
        broker = EmbeddedBroker(InProcessHub(), **FAST)
        listener = MagicMock()
        broker.add_failure_listener(listener)
        broker.publish("t", b"never sent")

        # Act
        await broker.disconnect()

        # Assert
        listener.assert_called_once()
        topic, payload, error = listener.call_args.args
        assert (topic, payload) == ("t", b"never sent")
        assert isinstance(error, BrokerDisconnected)
        assert error.code == "stopped"

    @pytest.mark.asyncio
    async def test_send_errors_exhaust_retries(self):
        # Arrange
        broker = EmbeddedBroker(InProcessHub(), send_attempts=2, **FAST)
        listener = MagicMock()
        broker.add_failure_listener(listener)

        async def broken_send(topic, payload, retain):
            raise ConnectionError("write failed")

        broker._send = broken_send
        await _connected(broker)

        # Act
        broker.publish("t", b"x")
        await broker.join_outbound()

        # Assert
        listener.assert_called_once()
        assert isinstance(listener.call_args.args[2], ConnectionError)
        await broker.disconnect()

    @pytest.mark.asyncio
    async def test_listener_error_is_contained(self):
        broker = EmbeddedBroker(InProcessHub(), **FAST)
        good = MagicMock()
        broker.add_failure_listener(MagicMock(side_effect=RuntimeError("listener bug")))
        broker.add_failure_listener(good)
        broker.publish("t", b"x")
        await broker.disconnect()
        good.assert_called_once()


class TestCreateBroker:
    """Test broker selection from config."""

    def test_builtin_mode(self):
        broker = create_broker(Config({"broker": {"mode": "built-in", "persistence": False}}))
        assert isinstance(broker, EmbeddedBroker)
        assert broker.hub.persistence is False

    def test_default_is_builtin(self):
        assert isinstance(create_broker(Config({})), EmbeddedBroker)

    def test_shared_hub(self):
        hub = InProcessHub()
        broker = create_broker(Config({}), hub=hub)
        assert broker.hub is hub

    def test_external_mode(self):
        broker = create_broker(Config({"broker": {"mode": "external", "mqtt": {"host": "mqtt.local", "port": 8883}}}))
        assert isinstance(broker, MqttBroker)
        assert broker.name == "mqtt"

    def test_external_without_host(self):
        with pytest.raises(GatewayConfigurationError) as exc_info:
            create_broker(Config({"broker": {"mode": "external"}}))
        assert exc_info.value.code == "missing_mqtt_host"

    def test_unknown_mode(self):
        with pytest.raises(GatewayConfigurationError) as exc_info:
            create_broker(Config({"broker": {"mode": "carrier-pigeon"}}))
        assert exc_info.value.code == "invalid_broker_mode"


class TestHubSubscribe:
    """Test hub-level edge cases."""

    @pytest.mark.asyncio
    async def test_subscribe_requires_attach(self):
        hub = InProcessHub()
        broker = EmbeddedBroker(hub, **FAST)
        with pytest.raises(ConnectionError):
            await hub.subscribe(broker, "x")

    @pytest.mark.asyncio
    async def test_route_counts_receivers(self):
        hub = InProcessHub()
        a = EmbeddedBroker(hub, **FAST)
        b = EmbeddedBroker(hub, **FAST)
        await a.subscribe("x", Collector())
        await b.subscribe("y", Collector())
        await _connected(a, b)
        assert await hub.route("x", b"1") == 1
        await a.disconnect()
        await b.disconnect()

    @pytest.mark.asyncio
    async def test_drop_all_detaches(self):
        hub = InProcessHub()
        a = EmbeddedBroker(hub, reconnect_min_delay=10, reconnect_max_delay=10)
        await _connected(a)
        hub.drop()
        await asyncio.sleep(0.01)
        assert hub.clients == []
        assert a.connected is False
        await a.disconnect()
