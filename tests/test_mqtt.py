"""Tests for the MQTT adapter."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from printbridge.adapters import MQTTClient, MQTTConnectionError
from printbridge.config import BrokerConfig
from printbridge.errors import TransportError

import paho.mqtt.client as mqtt


class FakeMqttClient:
    """Minimal fake paho-mqtt client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *args,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
        ack_publishes: bool = True,
        **kwargs,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc
        self._ack_publishes = ack_publishes
        self._mid = 0
        events["client_args"] = (args, kwargs)

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.on_publish = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(self.on_connect, self, None, None, self._rc_connect, None)

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect, self, None, None, self._rc_disconnect, None
            )

    def publish(self, topic, payload, qos=0, retain=False, properties=None):
        self._mid += 1
        self._events.setdefault("published", []).append((topic, payload, qos, retain))
        if self._ack_publishes and self.on_publish:
            self._loop.call_soon(self.on_publish, self, None, self._mid, 0, None)
        return SimpleNamespace(rc=self._publish_rc, mid=self._mid)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        return self._subscribe_rc, 1

    def reconnect(self):
        self._events["reconnect_called"] = self._events.get("reconnect_called", 0) + 1
        if self.on_connect:
            self._loop.call_soon(self.on_connect, self, None, None, self._rc_connect, None)
        return mqtt.MQTT_ERR_SUCCESS


def _install(monkeypatch, events: dict, **options) -> None:
    loop = asyncio.get_running_loop()

    def factory(*args, **kwargs):
        return FakeMqttClient(loop, events, *args, **options, **kwargs)

    monkeypatch.setattr("printbridge.adapters.mqtt.mqtt.Client", factory)


@pytest_asyncio.fixture
async def mqtt_client(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events)

    config = BrokerConfig(
        host="broker.farm.local",
        port=1883,
        username="operator",
        password="token",
        publish_timeout_seconds=0.5,
    )

    client = MQTTClient(config, client_id="bridge-42")
    await client.connect()

    yield client, events

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_configures_client(mqtt_client):
    client, events = mqtt_client

    assert events["connect_args"] == ("broker.farm.local", 1883, 60)
    assert events["auth"] == ("operator", "token")
    assert events["loop_start"] == 1
    assert events["client_args"] == (
        (mqtt.CallbackAPIVersion.VERSION2,),
        {"client_id": "bridge-42"},
    )
    assert client.is_connected()


def test_client_id_defaults_to_random_suffix():
    first = MQTTClient(BrokerConfig())
    second = MQTTClient(BrokerConfig())

    assert first.client_id.startswith("printbridge-")
    assert len(first.client_id) == len("printbridge-") + 8
    assert first.client_id != second.client_id
    assert MQTTClient(BrokerConfig(client_id="configured")).client_id == "configured"


@pytest.mark.asyncio
async def test_publish_waits_for_acknowledgement(mqtt_client):
    client, events = mqtt_client

    await client.publish("test/topic", b"payload", qos=1, retain=True)

    assert events["published"] == [("test/topic", b"payload", 1, True)]
    assert client._pending_publishes == {}


@pytest.mark.asyncio
async def test_publish_times_out_without_acknowledgement(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, ack_publishes=False)

    client = MQTTClient(BrokerConfig(publish_timeout_seconds=0.05), client_id="bridge-1")
    await client.connect()

    with pytest.raises(MQTTConnectionError):
        await client.publish("test/topic", b"payload", qos=1)

    # fire-and-forget publishes do not wait
    await client.publish("test/topic", b"payload", qos=0)
    assert len(events["published"]) == 2

    await client.disconnect()


@pytest.mark.asyncio
async def test_subscribe_records_topics(mqtt_client):
    client, events = mqtt_client

    client.subscribe("control_result/+", qos=1)
    client.unsubscribe("control_result/+")

    assert events["subscribed"] == [("control_result/+", 1)]
    assert events["unsubscribed"] == ["control_result/+"]


@pytest.mark.asyncio
async def test_message_handler_runs_on_loop_in_order(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events)

    client = MQTTClient(BrokerConfig(), client_id="bridge-99")
    received = []
    done = asyncio.Event()

    def handler(topic: str, payload: bytes) -> None:
        received.append((topic, payload))
        if len(received) == 3:
            done.set()

    client.set_message_handler(handler)
    await client.connect()

    for index in range(3):
        message = SimpleNamespace(topic="control_result/x", payload=str(index).encode())
        client._on_message(client._client, None, message)  # type: ignore[arg-type]

    await asyncio.wait_for(done.wait(), timeout=1.0)
    await client.disconnect()

    assert [payload for _, payload in received] == [b"0", b"1", b"2"]


@pytest.mark.asyncio
async def test_publish_failure_raises(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, publish_rc=mqtt.MQTT_ERR_NO_CONN)

    client = MQTTClient(BrokerConfig(), client_id="bridge-7")
    await client.connect()

    with pytest.raises(MQTTConnectionError) as excinfo:
        await client.publish("test", b"payload")
    assert isinstance(excinfo.value, TransportError)

    await client.disconnect()


@pytest.mark.asyncio
async def test_operations_before_connect_raise():
    client = MQTTClient(BrokerConfig(), client_id="bridge-0")

    with pytest.raises(MQTTConnectionError):
        await client.publish("test", b"payload")
    with pytest.raises(MQTTConnectionError):
        client.subscribe("test")
    with pytest.raises(MQTTConnectionError):
        client.unsubscribe("test")


@pytest.mark.asyncio
async def test_reconnect_triggers_paho_and_connect_handlers(mqtt_client):
    client, events = mqtt_client
    codes = []
    client.register_connect_handler(codes.append)

    await client.reconnect()

    assert events.get("reconnect_called") == 1
    assert codes == [0]


@pytest.mark.asyncio
async def test_disconnect_handler_invoked(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, rc_disconnect=1)

    client = MQTTClient(BrokerConfig(), client_id="bridge-123")
    disconnect_event = asyncio.Event()

    def _handler(rc: int) -> None:
        events["disconnect_rc"] = rc
        disconnect_event.set()

    client.register_disconnect_handler(_handler)

    await client.connect()
    await client.disconnect()

    await asyncio.wait_for(disconnect_event.wait(), timeout=1.0)
    assert events.get("disconnect_rc") == 1
    assert not client.is_connected()


@pytest.mark.asyncio
async def test_connect_failure_raises(monkeypatch):
    events: dict = {}
    _install(monkeypatch, events, rc_connect=5)

    client = MQTTClient(BrokerConfig(), client_id="bridge-8")

    with pytest.raises(MQTTConnectionError):
        await client.connect()

    assert events["loop_stop"] == 1
