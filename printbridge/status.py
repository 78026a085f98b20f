"""Long-lived device watchers: dashboard status and control results."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Union

from . import constants
from .core.messages import ResultEnvelope, UnknownMessage, UploadProgress, decode_result_message
from .core.redaction import mask_identifier, redact_identifiers
from .core.registry import CompositeSubscription, ListenerRegistry, Subscription
from .core.topics import TopicFamily, TopicRouter
from .errors import TransportError
from .printer_state import PrinterStatus, decode_printer_status

LOGGER = logging.getLogger(__name__)

StatusCallback = Callable[[str, PrinterStatus], None]
ControlResultCallback = Callable[[str, Union[ResultEnvelope, UploadProgress]], None]


class StatusMonitor:
    """Watches devices' dashboard status and control result topics."""

    def __init__(self, registry: ListenerRegistry, router: TopicRouter) -> None:
        self._registry = registry
        self._router = router

    def watch(self, device_id: str, callback: StatusCallback) -> Subscription:
        topic = self._router.dashboard_status(device_id)
        router = self._router

        def _on_message(message_topic: str, payload: bytes) -> None:
            device = router.device_from_topic(message_topic, TopicFamily.DASHBOARD_STATUS)
            if device is None:
                LOGGER.debug(
                    "Ignoring status on unexpected topic %s", redact_identifiers(message_topic)
                )
                return
            callback(device, decode_printer_status(payload))

        subscription = self._registry.subscribe(
            topic, _on_message, qos=constants.QOS_AT_LEAST_ONCE
        )
        LOGGER.debug("Watching dashboard status of %s", mask_identifier(device_id))
        return subscription

    def watch_control_results(
        self, device_id: str, callback: ControlResultCallback
    ) -> Subscription:
        """Deliver every result and progress envelope the device publishes.

        Unlike a correlated wait this listener stays until closed, so replies to
        fire-and-forget commands can be surfaced as notifications.
        """

        topic = self._router.control_result(device_id)
        router = self._router

        def _on_message(message_topic: str, payload: bytes) -> None:
            device = router.device_from_topic(message_topic, TopicFamily.CONTROL_RESULT)
            if device is None:
                return
            message = decode_result_message(payload, topic=message_topic)
            if isinstance(message, UnknownMessage):
                LOGGER.debug(
                    "Ignoring unknown control result (type=%s, action=%s)",
                    message.type,
                    message.action,
                )
                return
            callback(device, message)

        subscription = self._registry.subscribe(
            topic, _on_message, qos=constants.QOS_AT_LEAST_ONCE
        )
        LOGGER.debug("Watching control results of %s", mask_identifier(device_id))
        return subscription

    def watch_many(
        self, device_ids: Iterable[str], callback: StatusCallback
    ) -> CompositeSubscription:
        """Watch a batch of devices; a failure releases the ones already made."""

        subscriptions: List[Subscription] = []
        try:
            for device_id in device_ids:
                subscriptions.append(self.watch(device_id, callback))
        except Exception:
            for subscription in subscriptions:
                try:
                    subscription.close()
                except TransportError as exc:
                    LOGGER.warning(
                        "Failed to release %s: %s", redact_identifiers(subscription.topic), exc
                    )
            raise
        return CompositeSubscription(subscriptions)
