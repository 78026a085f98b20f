import json
from typing import Any, Callable, Dict, Optional

import pytest

from printbridge.core.registry import ListenerRegistry
from printbridge.core.topics import TopicRouter
from printbridge.errors import TransportError


class FakeMQTT:
    """In-memory transport recording everything the bridge sends."""

    def __init__(self) -> None:
        self.handler = None
        self.connect_handlers: list = []
        self.subscriptions: list[tuple[str, int]] = []
        self.unsubscriptions: list[str] = []
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.fail_publish: Optional[Callable[[str, Dict[str, Any]], bool]] = None
        self.on_publish: Optional[Callable[[str, Dict[str, Any]], None]] = None
        self.fail_subscribe = False

    def set_message_handler(self, handler):
        self.handler = handler

    def register_connect_handler(self, handler):
        self.connect_handlers.append(handler)

    def subscribe(self, topic: str, qos: int = 1):
        if self.fail_subscribe:
            raise TransportError(f"subscribe to {topic} refused")
        self.subscriptions.append((topic, qos))

    def unsubscribe(self, topic: str):
        self.unsubscriptions.append(topic)

    async def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        decoded = json.loads(payload)
        if self.fail_publish is not None and self.fail_publish(topic, decoded):
            raise TransportError(f"publish to {topic} refused")
        self.published.append((topic, payload, qos, retain))
        if self.on_publish is not None:
            self.on_publish(topic, decoded)

    def emit(self, topic: str, payload: Any) -> None:
        if self.handler is None:
            raise RuntimeError("No handler registered")
        data = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        self.handler(topic, data)

    def reconnect(self) -> None:
        for handler in self.connect_handlers:
            handler(0)

    # helpers ---------------------------------------------------------
    def messages(self, topic: Optional[str] = None) -> list[Dict[str, Any]]:
        return [
            json.loads(payload)
            for published_topic, payload, _, _ in self.published
            if topic is None or published_topic == topic
        ]

    def subscribed_topics(self) -> list[str]:
        return [topic for topic, _ in self.subscriptions]


@pytest.fixture
def transport() -> FakeMQTT:
    return FakeMQTT()


@pytest.fixture
def router() -> TopicRouter:
    return TopicRouter()


@pytest.fixture
def registry(transport: FakeMQTT) -> ListenerRegistry:
    return ListenerRegistry(transport)
