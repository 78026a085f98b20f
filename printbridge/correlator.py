"""Bridges asynchronous result topics to await-style calls.

A :class:`PendingResult` subscribes to a device's result topics through the
listener registry, filters inbound envelopes by correlation id (an id-less
``control_result`` matches on its action instead), routes
progress envelopes to a callback, and resolves on the first matching terminal
envelope. Every exit path (result, timeout, cancellation, exception) releases
its subscriptions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from . import constants
from .core.messages import (
    CONTROL_RESULT_TYPE,
    UPLOAD_RESULT_TYPE,
    ResultEnvelope,
    UnknownMessage,
    UploadProgress,
    decode_result_message,
)
from .core.redaction import mask_identifier, redact_identifiers
from .core.registry import ListenerRegistry, Subscription
from .core.topics import TopicFamily, TopicRouter
from .errors import ResultTimeoutError, TransportError, ValidationError

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadProgress], None]

DEFAULT_RESULT_FAMILIES = (TopicFamily.CONTROL_RESULT, TopicFamily.GCODE_RESULT)
DEFAULT_TERMINAL_ACTIONS = ("sd_upload",)


class ResultStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ResultOutcome:
    status: ResultStatus
    envelope: Optional[ResultEnvelope] = None
    message: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCEEDED

    @property
    def timed_out(self) -> bool:
        return self.status is ResultStatus.TIMED_OUT

    def raise_for_status(self) -> None:
        """Raise :class:`ResultTimeoutError` for timed-out outcomes."""

        if self.status is ResultStatus.TIMED_OUT:
            raise ResultTimeoutError(
                self.message or "Timed out waiting for result",
                correlation_id=self.correlation_id,
            )


class PendingResult:
    """One registered wait for a terminal result envelope."""

    def __init__(
        self,
        correlator: "ResultCorrelator",
        device_id: str,
        topics: Sequence[str],
        *,
        correlation_id: Optional[str],
        on_progress: Optional[ProgressCallback],
        actions: Iterable[str],
    ) -> None:
        self._correlator = correlator
        self.device_id = device_id
        self.correlation_id = correlation_id
        self._on_progress = on_progress
        self._actions = frozenset(actions)
        self._future: asyncio.Future[Optional[ResultEnvelope]] = (
            asyncio.get_running_loop().create_future()
        )
        self._subscriptions: List[Subscription] = []
        self._closed = False

        registry = correlator.registry
        try:
            for topic in topics:
                self._subscriptions.append(
                    registry.subscribe(topic, self._handle_message, qos=constants.QOS_AT_LEAST_ONCE)
                )
        except Exception:
            self._release()
            raise

    @property
    def topics(self) -> List[str]:
        return [subscription.topic for subscription in self._subscriptions]

    @property
    def closed(self) -> bool:
        return self._closed

    def done(self) -> bool:
        return self._future.done()

    def _matches(self, envelope: ResultEnvelope) -> bool:
        # control_result envelopes carry no job id; they match on action alone
        if self.correlation_id is not None and envelope.correlation_id is not None:
            return envelope.correlation_id == self.correlation_id
        if envelope.type == UPLOAD_RESULT_TYPE:
            return self.correlation_id is None
        return envelope.type == CONTROL_RESULT_TYPE and envelope.action in self._actions

    def _handle_message(self, topic: str, payload: bytes) -> None:
        if self._future.done():
            return

        message = decode_result_message(payload, topic=topic)

        if isinstance(message, UploadProgress):
            if (
                message.correlation_id is not None
                and self.correlation_id is not None
                and message.correlation_id != self.correlation_id
            ):
                return
            if self._on_progress is not None:
                try:
                    self._on_progress(message)
                except Exception:
                    LOGGER.exception("Progress callback raised for %s", redact_identifiers(topic))
            return

        if isinstance(message, UnknownMessage):
            LOGGER.debug(
                "Ignoring unknown result message on %s (type=%s, action=%s)",
                redact_identifiers(topic),
                message.type,
                message.action,
            )
            return

        if self._matches(message):
            LOGGER.debug(
                "Result for %s resolved (ok=%s)",
                mask_identifier(self.correlation_id) or "uncorrelated wait",
                message.ok,
            )
            self._future.set_result(message)

    async def wait(self, timeout: Optional[float] = None) -> ResultOutcome:
        """Wait for the terminal envelope; always closes the registration."""

        effective = self._correlator.default_timeout if timeout is None else timeout
        if effective <= 0:
            self.close()
            raise ValidationError("timeout must be positive", field="timeout")

        try:
            envelope = await asyncio.wait_for(asyncio.shield(self._future), timeout=effective)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Timed out after %.1fs waiting for result on device %s",
                effective,
                mask_identifier(self.device_id),
            )
            return ResultOutcome(
                status=ResultStatus.TIMED_OUT,
                message=f"No result received within {effective:g}s",
                correlation_id=self.correlation_id,
            )
        finally:
            self.close()

        if envelope is None:
            return ResultOutcome(
                status=ResultStatus.CANCELLED,
                message="Wait cancelled",
                correlation_id=self.correlation_id,
            )

        return ResultOutcome(
            status=ResultStatus.SUCCEEDED if envelope.ok else ResultStatus.FAILED,
            envelope=envelope,
            message=envelope.message,
            correlation_id=self.correlation_id,
        )

    def close(self) -> None:
        """Release subscriptions; an unresolved wait resolves as cancelled."""

        if self._closed:
            return
        if not self._future.done():
            self._future.set_result(None)
        self._release()

    def _release(self) -> None:
        self._closed = True
        self._correlator._forget(self)
        for subscription in self._subscriptions:
            try:
                subscription.close()
            except TransportError as exc:
                LOGGER.warning(
                    "Failed to release result subscription %s: %s",
                    redact_identifiers(subscription.topic),
                    exc,
                )
        self._subscriptions.clear()

    async def __aenter__(self) -> "PendingResult":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class ResultCorrelator:
    """Creates :class:`PendingResult` registrations against result topics."""

    def __init__(
        self,
        registry: ListenerRegistry,
        router: TopicRouter,
        *,
        default_timeout: float = constants.DEFAULT_RESULT_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry
        self.router = router
        self.default_timeout = default_timeout
        self._pending: List[PendingResult] = []

    def open(
        self,
        device_id: str,
        correlation_id: Optional[str] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        families: Sequence[TopicFamily] = DEFAULT_RESULT_FAMILIES,
        actions: Iterable[str] = DEFAULT_TERMINAL_ACTIONS,
    ) -> PendingResult:
        """Register a wait; messages published after this returns are observed."""

        topics = [self.router.topic(device_id, family) for family in families]
        pending = PendingResult(
            self,
            device_id,
            topics,
            correlation_id=correlation_id,
            on_progress=on_progress,
            actions=actions,
        )
        self._pending.append(pending)
        return pending

    async def wait_for_result(
        self,
        device_id: str,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        *,
        on_progress: Optional[ProgressCallback] = None,
        families: Sequence[TopicFamily] = DEFAULT_RESULT_FAMILIES,
        actions: Iterable[str] = DEFAULT_TERMINAL_ACTIONS,
    ) -> ResultOutcome:
        pending = self.open(
            device_id,
            correlation_id,
            on_progress=on_progress,
            families=families,
            actions=actions,
        )
        return await pending.wait(timeout)

    def pending_count(self) -> int:
        return len(self._pending)

    def close(self) -> None:
        for pending in list(self._pending):
            pending.close()

    def _forget(self, pending: PendingResult) -> None:
        try:
            self._pending.remove(pending)
        except ValueError:
            pass
