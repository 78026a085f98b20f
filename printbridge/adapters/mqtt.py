"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable, Dict, List, Optional

import paho.mqtt.client as mqtt

from .. import constants
from ..config import BrokerConfig
from ..core.protocols import MessageHandler
from ..core.redaction import redact_identifiers
from ..errors import TransportError

LOGGER = logging.getLogger(__name__)


class MQTTConnectionError(TransportError):
    """Raised when the MQTT client fails to connect, publish or subscribe."""


def default_client_id() -> str:
    return f"{constants.APP_NAME}-{uuid.uuid4().hex[:8]}"


def _reason_value(reason_code) -> int:
    return int(getattr(reason_code, "value", reason_code))


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho invokes callbacks on its network thread; every callback is handed to
    the event loop with ``call_soon_threadsafe`` so listeners run on the loop
    thread in the order the broker delivered the messages.
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: Optional[str] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id or config.client_id or default_client_id()
        self.keepalive = config.keepalive
        self.publish_timeout = config.publish_timeout_seconds

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._last_connect_rc: Optional[int] = None
        self._connected: bool = False
        self._disconnect_handlers: List[Callable[[int], None]] = []
        self._connect_handlers: List[Callable[[int], None]] = []
        self._pending_publishes: Dict[int, asyncio.Future[None]] = {}

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Connect to the MQTT broker and wait for acknowledgement."""

        effective = self.config.connect_timeout_seconds if timeout is None else timeout
        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None

        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        client.enable_logger(LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_publish = self._on_publish

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s as %s",
            self.config.host,
            self.config.port,
            self.client_id,
        )

        client.connect_async(self.config.host, self.config.port, self.keepalive)
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=effective)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            client.loop_stop()
            self._client = None
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            client.loop_stop()
            self._client = None
            raise

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
            self._connected = False
            self._fail_pending_publishes("MQTT client disconnected")

    async def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        """Publish ``payload``; for qos > 0 wait until the broker acknowledges it."""

        if not self._client or not self._loop:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(
                f"Publish to {redact_identifiers(topic)} failed with rc={info.rc}"
            )

        if qos == 0:
            return

        # the acknowledgement is delivered through the loop, so the future is
        # always registered before it can resolve
        future = self._loop.create_future()
        self._pending_publishes[info.mid] = future

        try:
            await asyncio.wait_for(future, timeout=self.publish_timeout)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError(
                f"Timed out waiting for broker acknowledgement on {redact_identifiers(topic)}"
            ) from exc
        finally:
            self._pending_publishes.pop(info.mid, None)

    def subscribe(self, topic: str, qos: int = 1) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        result, _ = self._client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(
                f"Subscribe to {redact_identifiers(topic)} failed with rc={result}"
            )

    def unsubscribe(self, topic: str) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        result, _ = self._client.unsubscribe(topic)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(
                f"Unsubscribe from {redact_identifiers(topic)} failed with rc={result}"
            )

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    async def reconnect(self, timeout: Optional[float] = None) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not initialised")

        effective = self.config.connect_timeout_seconds if timeout is None else timeout
        self._connected_event = asyncio.Event()
        self._last_connect_rc = None

        rc = self._client.reconnect()
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"MQTT reconnect failed with rc={rc}")

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=effective)
        except asyncio.TimeoutError as exc:
            raise MQTTConnectionError("Timed out reconnecting to MQTT broker") from exc

        if self._last_connect_rc is None or self._last_connect_rc != 0:
            raise MQTTConnectionError(
                f"MQTT broker rejected reconnection (rc={self._last_connect_rc})"
            )

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        rc = _reason_value(reason_code)
        if self._loop:
            self._loop.call_soon_threadsafe(self._handle_connect, rc)

    def _handle_connect(self, rc: int) -> None:
        self._last_connect_rc = rc
        if rc == 0:
            LOGGER.info("Connected to MQTT broker")
            self._connected = True
            if self._connected_event:
                self._connected_event.set()
            for handler in self._connect_handlers:
                self._run_handler(handler, rc)
        else:
            LOGGER.error("MQTT connection failed with rc=%s", rc)
            self._connected = False
            if self._connected_event:
                self._connected_event.set()

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _reason_value(reason_code)
        if self._loop:
            self._loop.call_soon_threadsafe(self._handle_disconnect, rc)

    def _handle_disconnect(self, rc: int) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", rc)
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        for handler in self._disconnect_handlers:
            self._run_handler(handler, rc)

    def _on_publish(self, client, userdata, mid: int, reason_code=None, properties=None) -> None:
        if self._loop:
            self._loop.call_soon_threadsafe(self._handle_publish, mid)

    def _handle_publish(self, mid: int) -> None:
        future = self._pending_publishes.get(mid)
        if future is not None and not future.done():
            future.set_result(None)

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        loop = self._loop
        if not loop:
            return
        loop.call_soon_threadsafe(self._deliver, message.topic, message.payload)

    def _deliver(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if not handler:
            return

        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            LOGGER.exception("MQTT message handler raised an exception")

    def _fail_pending_publishes(self, reason: str) -> None:
        for future in self._pending_publishes.values():
            if not future.done():
                future.set_exception(MQTTConnectionError(reason))
        self._pending_publishes.clear()

    @staticmethod
    def _run_handler(handler: Callable[[int], None], rc: int) -> None:
        try:
            handler(rc)
        except Exception:
            LOGGER.exception("MQTT connection handler raised an exception")
