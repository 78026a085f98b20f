"""Protocol definitions for the broker transport and listener callbacks."""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Protocol


MessageHandler = Callable[[str, bytes], Awaitable[None] | None]


class Publisher(Protocol):
    """Minimal contract for components that only publish."""

    async def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        """Publish a payload, returning once the broker acknowledged it (qos > 0)."""
        ...


class Transport(Publisher, Protocol):
    """Broker connection consumed by the listener registry and publishers."""

    def subscribe(self, topic: str, qos: int = 1) -> None:
        """Create the broker-side subscription for ``topic``."""
        ...

    def unsubscribe(self, topic: str) -> None:
        """Remove the broker-side subscription for ``topic``."""
        ...

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        """Route every inbound message to ``handler``."""
        ...

    def register_connect_handler(self, handler: Callable[[int], None]) -> None:
        """Invoke ``handler`` on the event loop after each successful connect."""
        ...
