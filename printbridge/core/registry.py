"""Reference-counted topic subscriptions shared by many logical listeners.

The broker only ever sees one subscription per topic: the first listener for
a topic creates it, the last listener to leave removes it. Inbound messages
are fanned out to every listener whose pattern matches, on the event loop
thread, in arrival order.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..errors import ProtocolParseError, TransportError
from .protocols import MessageHandler, Transport
from .redaction import redact_identifiers
from .topics import topic_matches

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ListenerEntry:
    """Callbacks registered for one topic pattern."""

    topic: str
    qos: int
    # dict keys preserve registration order and give set semantics
    callbacks: Dict[MessageHandler, None] = field(default_factory=dict)


class Subscription:
    """Handle returned to listeners; closing it releases the registry entry."""

    def __init__(self, registry: "ListenerRegistry", topic: str, callback: MessageHandler) -> None:
        self._registry = registry
        self.topic = topic
        self.callback = callback
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._registry.unsubscribe(self.topic, self.callback)


class CompositeSubscription:
    """Groups several subscriptions behind one ``close()``."""

    def __init__(self, subscriptions: List[Subscription]) -> None:
        self._subscriptions = list(subscriptions)

    @property
    def topics(self) -> List[str]:
        return [subscription.topic for subscription in self._subscriptions]

    @property
    def closed(self) -> bool:
        return all(subscription.closed for subscription in self._subscriptions)

    def close(self) -> None:
        errors: List[TransportError] = []
        for subscription in self._subscriptions:
            try:
                subscription.close()
            except TransportError as exc:
                errors.append(exc)
        if errors:
            raise errors[0]


class ListenerRegistry:
    """Owns the per-topic callback sets and the transport message handler.

    Constructed by the composition root, which must call :meth:`close` during
    teardown so every remaining broker subscription is released.
    """

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._entries: Dict[str, ListenerEntry] = {}
        self._closed = False
        self._tasks: set[asyncio.Task[None]] = set()

        transport.set_message_handler(self.dispatch)
        transport.register_connect_handler(self._handle_reconnect)

    # ------------------------------------------------------------------
    # subscription bookkeeping
    # ------------------------------------------------------------------
    def subscribe(self, topic: str, callback: MessageHandler, qos: int = 1) -> Subscription:
        """Add ``callback`` for ``topic``; subscribes on the broker on 0→1."""

        if self._closed:
            raise TransportError("Listener registry is closed")

        entry = self._entries.get(topic)
        if entry is None:
            entry = ListenerEntry(topic=topic, qos=qos)
            entry.callbacks[callback] = None
            self._entries[topic] = entry
            try:
                self._transport.subscribe(topic, qos=qos)
            except Exception:
                self._entries.pop(topic, None)
                raise
            LOGGER.debug("Subscribed to %s (qos=%s)", redact_identifiers(topic), qos)
        else:
            entry.callbacks[callback] = None

        return Subscription(self, topic, callback)

    def unsubscribe(self, topic: str, callback: MessageHandler) -> None:
        """Remove ``callback`` for ``topic``; unsubscribes on the broker on N→0."""

        entry = self._entries.get(topic)
        if entry is None or callback not in entry.callbacks:
            return

        del entry.callbacks[callback]
        if entry.callbacks:
            return

        del self._entries[topic]
        if self._closed:
            return
        self._transport.unsubscribe(topic)
        LOGGER.debug("Unsubscribed from %s", redact_identifiers(topic))

    def listener_count(self, topic: str) -> int:
        entry = self._entries.get(topic)
        return len(entry.callbacks) if entry else 0

    def topics(self) -> List[str]:
        return list(self._entries)

    def close(self) -> None:
        """Release every broker subscription and detach from the transport."""

        if self._closed:
            return

        topics = list(self._entries)
        self._entries.clear()
        for topic in topics:
            try:
                self._transport.unsubscribe(topic)
            except TransportError as exc:
                LOGGER.warning(
                    "Failed to unsubscribe from %s during close: %s",
                    redact_identifiers(topic),
                    exc,
                )
        self._closed = True
        self._transport.set_message_handler(None)

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------
    def dispatch(self, topic: str, payload: bytes) -> None:
        """Fan an inbound message out to every matching listener."""

        # snapshot: callbacks may subscribe/unsubscribe while we iterate
        matched = [
            list(entry.callbacks)
            for pattern, entry in list(self._entries.items())
            if topic_matches(pattern, topic)
        ]
        if not matched:
            LOGGER.debug("Dropping message on %s with no listeners", redact_identifiers(topic))
            return

        for callbacks in matched:
            for callback in callbacks:
                self._invoke(callback, topic, payload)

    def _invoke(self, callback: MessageHandler, topic: str, payload: bytes) -> None:
        try:
            result = callback(topic, payload)
        except ProtocolParseError as exc:
            LOGGER.warning("Dropping malformed message on %s: %s", redact_identifiers(topic), exc)
            return
        except Exception:
            LOGGER.exception("Listener for %s raised an exception", redact_identifiers(topic))
            return

        if asyncio.iscoroutine(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, ProtocolParseError):
            LOGGER.warning("Dropping malformed message: %s", exc)
        elif exc is not None:
            LOGGER.error("Async listener raised an exception", exc_info=exc)

    def _handle_reconnect(self, rc: int) -> None:
        if self._closed:
            return
        for topic, entry in list(self._entries.items()):
            try:
                self._transport.subscribe(topic, qos=entry.qos)
            except TransportError as exc:
                LOGGER.warning(
                    "Failed to restore subscription %s after reconnect: %s",
                    redact_identifiers(topic),
                    exc,
                )
        if self._entries:
            LOGGER.info("Restored %d subscriptions after reconnect", len(self._entries))

    @property
    def closed(self) -> bool:
        return self._closed

    def entry(self, topic: str) -> Optional[ListenerEntry]:
        return self._entries.get(topic)
