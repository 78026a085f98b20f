"""Chunked G-code transfer over the broker.

The broker offers no streaming and the device sends no per-chunk
acknowledgement, so a transfer is a fixed sequence of messages on the
device's ingest topic::

    start {job_id, filename, total_chunks, upload_target}
    chunk {job_id, seq, data_b64}        seq = 0 .. total_chunks-1
    end   {job_id, target}

followed by a terminal result on the device's result topics. ``cancel
{job_id}`` may be sent any time before ``end``. Ordering relies on the broker
preserving per-connection publish order on one topic.

There is no per-chunk retry: any publish failure fails the whole session and
the caller retries the transfer end to end.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from . import constants
from .commands import publish_json
from .config import UPLOAD_TARGETS
from .core.messages import UploadProgress
from .core.protocols import Publisher
from .core.redaction import mask_identifier, redact_identifiers
from .core.topics import TopicRouter, validate_device_id
from .correlator import PendingResult, ResultCorrelator, ResultOutcome, ResultStatus
from .errors import LogicError, TransportError, ValidationError

LOGGER = logging.getLogger(__name__)

LOCAL_PUBLISH_STAGE = "publish"


class UploadState(str, Enum):
    INIT = "init"
    STARTED = "started"
    SENDING = "sending"
    ENDED = "ended"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {
        UploadState.COMMITTED,
        UploadState.FAILED,
        UploadState.CANCELLED,
        UploadState.TIMED_OUT,
    }
)

_TRANSITIONS: Dict[UploadState, frozenset[UploadState]] = {
    UploadState.INIT: frozenset({UploadState.STARTED, UploadState.FAILED}),
    UploadState.STARTED: frozenset(
        {UploadState.SENDING, UploadState.ENDED, UploadState.CANCELLED, UploadState.FAILED}
    ),
    UploadState.SENDING: frozenset(
        {UploadState.SENDING, UploadState.ENDED, UploadState.CANCELLED, UploadState.FAILED}
    ),
    UploadState.ENDED: frozenset(
        {UploadState.COMMITTED, UploadState.FAILED, UploadState.TIMED_OUT}
    ),
}


def compute_total_chunks(total_size: int, chunk_size: int) -> int:
    """Return ``ceil(total_size / chunk_size)``."""

    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
        raise ValidationError("chunk_size must be a positive integer", field="chunk_size")
    if isinstance(total_size, bool) or not isinstance(total_size, int) or total_size < 0:
        raise ValidationError("total_size must be a non-negative integer", field="total_size")
    return (total_size + chunk_size - 1) // chunk_size


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    correlation_id: str
    stage: str
    bytes_received: int
    bytes_total: int
    percent: float
    timestamp: datetime


ProgressObserver = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class UploadSession:
    """Mutable state of one transfer, keyed by its correlation id."""

    correlation_id: str
    device_id: str
    filename: str
    total_size: int
    chunk_size: int
    total_chunks: int
    target: str
    state: UploadState = UploadState.INIT
    next_sequence: int = 0
    bytes_sent: int = 0
    sent_sequences: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new_state: UploadState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise LogicError(
                f"Upload {self.correlation_id}: illegal transition "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def record_chunk(self, seq: int, size: int) -> None:
        if seq != self.next_sequence:
            raise LogicError(
                f"Upload {self.correlation_id}: expected seq {self.next_sequence}, got {seq}"
            )
        self.sent_sequences.append(seq)
        self.next_sequence += 1
        self.bytes_sent += size


@dataclass(frozen=True, slots=True)
class UploadOutcome:
    correlation_id: str
    state: UploadState
    message: Optional[str] = None
    result: Optional[ResultOutcome] = None

    @property
    def ok(self) -> bool:
        return self.state is UploadState.COMMITTED


class UploadSessionManager:
    """Orchestrates start/chunk/end/cancel and exposes progress."""

    def __init__(
        self,
        publisher: Publisher,
        router: TopicRouter,
        correlator: ResultCorrelator,
        *,
        chunk_size: int = constants.DEFAULT_CHUNK_SIZE,
        result_timeout: float = constants.DEFAULT_RESULT_TIMEOUT_SECONDS,
        default_target: str = "sd",
    ) -> None:
        compute_total_chunks(0, chunk_size)
        if default_target not in UPLOAD_TARGETS:
            raise ValidationError(f"Unknown upload target {default_target!r}", field="target")

        self._publisher = publisher
        self._router = router
        self._correlator = correlator
        self.chunk_size = chunk_size
        self.result_timeout = result_timeout
        self.default_target = default_target

        self._sessions: Dict[str, UploadSession] = {}
        self._pending: Dict[str, PendingResult] = {}
        self._session_observers: Dict[str, ProgressObserver] = {}
        self._listeners: List[ProgressObserver] = []
        self._last_percent: Dict[tuple[str, str], float] = {}
        self._cancel_tasks: Dict[str, asyncio.Task[None]] = {}

    # ------------------------------------------------------------------
    # observers
    # ------------------------------------------------------------------
    def add_progress_listener(self, listener: ProgressObserver) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressObserver) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def get_session(self, correlation_id: str) -> Optional[UploadSession]:
        return self._sessions.get(correlation_id)

    def active_sessions(self) -> List[UploadSession]:
        return list(self._sessions.values())

    # ------------------------------------------------------------------
    # protocol steps
    # ------------------------------------------------------------------
    async def begin(
        self,
        device_id: str,
        filename: str,
        total_size: int,
        *,
        correlation_id: Optional[str] = None,
        target: Optional[str] = None,
        chunk_size: Optional[int] = None,
        on_progress: Optional[ProgressObserver] = None,
    ) -> UploadSession:
        """Create a session (or replay an active one) and publish ``start``."""

        device = validate_device_id(device_id)
        resolved_target = target or self.default_target
        if resolved_target not in UPLOAD_TARGETS:
            raise ValidationError(
                f"target must be one of {', '.join(UPLOAD_TARGETS)}", field="target"
            )
        size = chunk_size if chunk_size is not None else self.chunk_size
        total_chunks = compute_total_chunks(total_size, size)
        name = filename.strip() if isinstance(filename, str) else ""

        if correlation_id is not None and correlation_id in self._sessions:
            return await self._replay_start(
                self._sessions[correlation_id], device, name, total_size, size, resolved_target
            )

        session = UploadSession(
            correlation_id=correlation_id or str(uuid.uuid4()),
            device_id=device,
            filename=name,
            total_size=total_size,
            chunk_size=size,
            total_chunks=total_chunks,
            target=resolved_target,
        )
        if not name:
            warning = "Upload has no filename; the device will pick a name"
            session.warnings.append(warning)
            LOGGER.warning("Upload %s: %s", mask_identifier(session.correlation_id), warning)

        self._sessions[session.correlation_id] = session
        if on_progress is not None:
            self._session_observers[session.correlation_id] = on_progress
        try:
            self._pending[session.correlation_id] = self._correlator.open(
                device,
                session.correlation_id,
                on_progress=lambda progress: self._relay_device_progress(session, progress),
            )
        except Exception as exc:
            self._fail(session, f"Result subscription failed: {exc}")
            raise

        await self._publish_step(session, self._start_payload(session))
        if session.is_terminal:
            return session
        session.transition(UploadState.STARTED)
        LOGGER.info(
            "Upload %s started: %s (%d bytes, %d chunks, target=%s) to device %s",
            mask_identifier(session.correlation_id),
            session.filename or "<unnamed>",
            session.total_size,
            session.total_chunks,
            session.target,
            mask_identifier(device),
        )
        return session

    async def _replay_start(
        self,
        session: UploadSession,
        device: str,
        name: str,
        total_size: int,
        chunk_size: int,
        target: str,
    ) -> UploadSession:
        if (session.device_id, session.filename, session.total_size, session.chunk_size, session.target) != (
            device,
            name,
            total_size,
            chunk_size,
            target,
        ):
            raise LogicError(
                f"Correlation id {session.correlation_id} is already used by a different upload"
            )
        if session.state not in (UploadState.STARTED, UploadState.SENDING):
            raise LogicError(
                f"Upload {session.correlation_id} cannot replay start in state {session.state.value}"
            )
        LOGGER.info("Replaying start for upload %s", mask_identifier(session.correlation_id))
        await self._publish_step(session, self._start_payload(session))
        return session

    async def send_chunk(self, session: UploadSession, seq: int, data: bytes) -> None:
        """Publish chunk ``seq``; sequences must be gap-free and increasing."""

        if session.state not in (UploadState.STARTED, UploadState.SENDING):
            raise LogicError(
                f"Upload {session.correlation_id}: cannot send chunk in state {session.state.value}"
            )
        if seq != session.next_sequence or seq >= session.total_chunks:
            raise LogicError(
                f"Upload {session.correlation_id}: chunk seq {seq} out of order "
                f"(next={session.next_sequence}, total={session.total_chunks})"
            )
        if not data or len(data) > session.chunk_size:
            raise LogicError(
                f"Upload {session.correlation_id}: chunk {seq} has invalid size {len(data)}"
            )

        payload = {
            "action": "chunk",
            "job_id": session.correlation_id,
            "seq": seq,
            "data_b64": base64.b64encode(data).decode("ascii"),
        }
        await self._publish_step(session, payload)

        session.record_chunk(seq, len(data))
        if session.state in (UploadState.STARTED, UploadState.SENDING):
            session.transition(UploadState.SENDING)

        self._emit(
            session,
            ProgressEvent(
                correlation_id=session.correlation_id,
                stage=LOCAL_PUBLISH_STAGE,
                bytes_received=session.bytes_sent,
                bytes_total=session.total_size,
                percent=_percent(session.bytes_sent, session.total_size),
                timestamp=datetime.now(timezone.utc),
            ),
        )

    async def end(self, session: UploadSession) -> None:
        if session.state not in (UploadState.STARTED, UploadState.SENDING):
            raise LogicError(
                f"Upload {session.correlation_id}: cannot end in state {session.state.value}"
            )
        if session.sent_sequences != list(range(session.total_chunks)):
            raise LogicError(
                f"Upload {session.correlation_id}: sent {len(session.sent_sequences)} of "
                f"{session.total_chunks} chunks"
            )

        payload = {"action": "end", "job_id": session.correlation_id, "target": session.target}
        await self._publish_step(session, payload)
        # cancel or close may land while end is in flight
        if session.is_terminal:
            LOGGER.debug(
                "Upload %s became %s while publishing end",
                mask_identifier(session.correlation_id),
                session.state.value,
            )
            return
        session.transition(UploadState.ENDED)
        LOGGER.debug("Upload %s ended", mask_identifier(session.correlation_id))

    async def wait_result(
        self, session: UploadSession, timeout: Optional[float] = None
    ) -> UploadOutcome:
        """Await the device's terminal result and finish the session."""

        if session.state is not UploadState.ENDED:
            raise LogicError(
                f"Upload {session.correlation_id}: cannot await result in state {session.state.value}"
            )
        pending = self._pending.get(session.correlation_id)
        if pending is None:
            raise LogicError(f"Upload {session.correlation_id} has no result registration")

        try:
            result = await pending.wait(self.result_timeout if timeout is None else timeout)
        except BaseException:
            self._fail(session, "Interrupted while waiting for result")
            raise

        if session.is_terminal:
            # failed by close() while the wait was pending
            return UploadOutcome(
                correlation_id=session.correlation_id,
                state=session.state,
                message=session.error,
                result=result,
            )

        if result.status is ResultStatus.SUCCEEDED:
            session.transition(UploadState.COMMITTED)
        elif result.status is ResultStatus.TIMED_OUT:
            session.transition(UploadState.TIMED_OUT)
        elif result.status is ResultStatus.CANCELLED:
            self._fail(session, result.message or "Result wait cancelled")
        else:
            session.transition(UploadState.FAILED)
            session.error = result.message or "Device reported failure"

        self._teardown(session)
        log = LOGGER.info if session.state is UploadState.COMMITTED else LOGGER.warning
        log(
            "Upload %s finished: %s%s",
            mask_identifier(session.correlation_id),
            session.state.value,
            f" ({result.message})" if result.message else "",
        )
        return UploadOutcome(
            correlation_id=session.correlation_id,
            state=session.state,
            message=result.message,
            result=result,
        )

    def request_cancel(self, session_or_id: Union[UploadSession, str]) -> "asyncio.Task[None]":
        """Mark the session cancelled now and publish ``cancel`` in the background.

        The state change is synchronous, so no further chunk is published once
        this returns, even when called from a progress observer. Await the
        returned task to observe publish failures.
        """

        session = self._resolve(session_or_id)
        if session.state not in (UploadState.STARTED, UploadState.SENDING):
            raise LogicError(
                f"Upload {session.correlation_id}: cannot cancel in state {session.state.value}"
            )
        session.transition(UploadState.CANCELLED)
        self._teardown(session)
        LOGGER.info(
            "Upload %s cancelled after %d of %d chunks",
            mask_identifier(session.correlation_id),
            session.next_sequence,
            session.total_chunks,
        )

        task = asyncio.create_task(self._publish_cancel(session))
        self._cancel_tasks[session.correlation_id] = task
        task.add_done_callback(lambda _: self._cancel_tasks.pop(session.correlation_id, None))
        return task

    async def cancel(self, session_or_id: Union[UploadSession, str]) -> None:
        await self.request_cancel(session_or_id)

    # ------------------------------------------------------------------
    # whole-transfer helpers
    # ------------------------------------------------------------------
    async def upload(
        self,
        device_id: str,
        data: bytes,
        filename: str,
        *,
        target: Optional[str] = None,
        chunk_size: Optional[int] = None,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
        on_progress: Optional[ProgressObserver] = None,
    ) -> UploadOutcome:
        """Transfer ``data`` and wait for the device's verdict."""

        session = await self.begin(
            device_id,
            filename,
            len(data),
            correlation_id=correlation_id,
            target=target,
            chunk_size=chunk_size,
            on_progress=on_progress,
        )

        try:
            for seq in range(session.total_chunks):
                if session.is_terminal:
                    break
                offset = seq * session.chunk_size
                await self.send_chunk(session, seq, data[offset : offset + session.chunk_size])

            if not session.is_terminal:
                await self.end(session)
            if session.is_terminal:
                return await self._interrupted_outcome(session)
        except BaseException as exc:
            self._fail(session, str(exc) or type(exc).__name__)
            raise

        return await self.wait_result(session, timeout)

    async def upload_file(
        self,
        device_id: str,
        path: Union[str, Path],
        *,
        filename: Optional[str] = None,
        **kwargs,
    ) -> UploadOutcome:
        file_path = Path(path)
        data = file_path.read_bytes()
        return await self.upload(device_id, data, filename or file_path.name, **kwargs)

    def close(self) -> None:
        """Fail every in-flight session; used during bridge teardown."""

        for session in list(self._sessions.values()):
            self._fail(session, "Upload manager closed")

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------
    @staticmethod
    def _start_payload(session: UploadSession) -> dict:
        return {
            "action": "start",
            "job_id": session.correlation_id,
            "filename": session.filename,
            "total_chunks": session.total_chunks,
            "upload_target": session.target,
        }

    def _resolve(self, session_or_id: Union[UploadSession, str]) -> UploadSession:
        if isinstance(session_or_id, UploadSession):
            return session_or_id
        session = self._sessions.get(session_or_id)
        if session is None:
            raise LogicError(f"Unknown upload {session_or_id}")
        return session

    async def _publish_step(self, session: UploadSession, payload: dict) -> None:
        topic = self._router.gcode_ingest(session.device_id)
        try:
            await publish_json(
                self._publisher, topic, payload, qos=constants.QOS_AT_LEAST_ONCE
            )
        except TransportError as exc:
            if session.state is not UploadState.CANCELLED:
                self._fail(
                    session, f"{payload['action']} publish failed: {redact_identifiers(exc)}"
                )
            raise

    async def _publish_cancel(self, session: UploadSession) -> None:
        topic = self._router.gcode_ingest(session.device_id)
        await publish_json(
            self._publisher,
            topic,
            {"action": "cancel", "job_id": session.correlation_id},
            qos=constants.QOS_AT_LEAST_ONCE,
        )

    async def _interrupted_outcome(self, session: UploadSession) -> UploadOutcome:
        if session.state is UploadState.CANCELLED:
            await self._await_cancel(session)
            return UploadOutcome(
                correlation_id=session.correlation_id,
                state=UploadState.CANCELLED,
                message="Upload cancelled",
            )
        return UploadOutcome(
            correlation_id=session.correlation_id,
            state=session.state,
            message=session.error,
        )

    async def _await_cancel(self, session: UploadSession) -> None:
        task = self._cancel_tasks.get(session.correlation_id)
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except TransportError as exc:
            LOGGER.error(
                "Failed to publish cancel for upload %s: %s",
                mask_identifier(session.correlation_id),
                exc,
            )

    def _fail(self, session: UploadSession, reason: str) -> None:
        if session.is_terminal:
            return
        session.error = reason
        session.state = UploadState.FAILED
        self._teardown(session)
        LOGGER.error("Upload %s failed: %s", mask_identifier(session.correlation_id), reason)

    def _teardown(self, session: UploadSession) -> None:
        correlation_id = session.correlation_id
        if self._sessions.get(correlation_id) is session:
            del self._sessions[correlation_id]
        pending = self._pending.pop(correlation_id, None)
        if pending is not None:
            pending.close()
        self._session_observers.pop(correlation_id, None)
        for key in [key for key in self._last_percent if key[0] == correlation_id]:
            del self._last_percent[key]

    def _relay_device_progress(self, session: UploadSession, progress: UploadProgress) -> None:
        total = progress.total_bytes or session.total_size
        self._emit(
            session,
            ProgressEvent(
                correlation_id=session.correlation_id,
                stage=progress.stage,
                bytes_received=progress.received_bytes,
                bytes_total=total,
                percent=_percent(progress.received_bytes, total)
                if total
                else progress.percent,
                timestamp=progress.timestamp,
            ),
        )

    def _emit(self, session: UploadSession, event: ProgressEvent) -> None:
        key = (event.correlation_id, event.stage)
        last = self._last_percent.get(key)
        if last is not None and event.percent < last:
            LOGGER.debug(
                "Dropping regressing progress for %s stage %s (%.1f < %.1f)",
                mask_identifier(event.correlation_id),
                event.stage,
                event.percent,
                last,
            )
            return
        self._last_percent[key] = event.percent

        observers: List[ProgressObserver] = []
        session_observer = self._session_observers.get(session.correlation_id)
        if session_observer is not None:
            observers.append(session_observer)
        observers.extend(self._listeners)

        for observer in observers:
            try:
                observer(event)
            except Exception:
                LOGGER.exception(
                    "Progress observer raised for upload %s",
                    mask_identifier(session.correlation_id),
                )


def _percent(received: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return max(0.0, min(100.0, received * 100.0 / total))
