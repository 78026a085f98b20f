"""Decoding of result-topic payloads into a closed set of message types.

Result topics carry three shapes of message:

* ``sd_upload_progress`` progress envelopes whose ``message`` field holds the
  progress details, either as a JSON string or (newer firmware) an object;
* ``control_result`` terminal envelopes ``{type, action, ok, message}``;
* ``upload_result`` terminal envelopes ``{type, job_id, success, filename, ...}``.

Anything else decodes to :class:`UnknownMessage`, which listeners log and drop.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from ..errors import ProtocolParseError

PROGRESS_ACTION = "sd_upload_progress"
CONTROL_RESULT_TYPE = "control_result"
UPLOAD_RESULT_TYPE = "upload_result"

_CORRELATION_KEYS = ("job_id", "upload_id", "correlation_id")


@dataclass(frozen=True, slots=True)
class UploadProgress:
    """Non-terminal progress report relayed by the device."""

    correlation_id: Optional[str]
    stage: str
    name: Optional[str]
    received_bytes: int
    total_bytes: int
    percent: float
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class ResultEnvelope:
    """Terminal notification that resolves a pending wait."""

    type: str
    action: Optional[str]
    ok: bool
    message: Optional[str] = None
    correlation_id: Optional[str] = None
    filename: Optional[str] = None
    target: Optional[str] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True, slots=True)
class UnknownMessage:
    """Message whose discriminator is not recognised."""

    type: Optional[str]
    action: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict)


ResultMessage = Union[UploadProgress, ResultEnvelope, UnknownMessage]


def parse_json_object(payload: Any, *, topic: Optional[str] = None) -> dict[str, Any]:
    """Parse a broker payload into a JSON object.

    Accepts ``bytes``, ``str`` or an already-decoded mapping.
    """

    if isinstance(payload, Mapping):
        return dict(payload)

    if isinstance(payload, (bytes, bytearray, memoryview)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolParseError(f"Payload is not UTF-8: {exc}", topic=topic) from exc

    if not isinstance(payload, str):
        raise ProtocolParseError(
            f"Unsupported payload type {type(payload).__name__}", topic=topic
        )

    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(f"Payload is not valid JSON: {exc}", topic=topic) from exc

    if not isinstance(decoded, dict):
        raise ProtocolParseError("Payload is not a JSON object", topic=topic)

    return decoded


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse epoch milliseconds/seconds or ISO-8601 strings into UTC datetimes."""

    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = float(value)
        # values past year ~2286 in seconds are milliseconds
        if seconds > 1e10:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    return None


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _correlation_id(data: Mapping[str, Any]) -> Optional[str]:
    for key in _CORRELATION_KEYS:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _decode_progress(data: Mapping[str, Any], topic: Optional[str]) -> UploadProgress:
    inner = data.get("message")
    if isinstance(inner, str):
        details = parse_json_object(inner, topic=topic)
    elif isinstance(inner, Mapping):
        details = dict(inner)
    else:
        raise ProtocolParseError("Progress envelope has no message details", topic=topic)

    received = max(0, _as_int(details.get("received_bytes")))
    total = max(0, _as_int(details.get("total_bytes")))
    if total > 0:
        percent = min(100.0, received * 100.0 / total)
    else:
        percent = _as_float(details.get("percent")) or 0.0
        percent = max(0.0, min(100.0, percent))

    return UploadProgress(
        correlation_id=_correlation_id(details) or _correlation_id(data),
        stage=str(details.get("stage") or "unknown"),
        name=_as_text(details.get("name")),
        received_bytes=received,
        total_bytes=total,
        percent=percent,
        timestamp=parse_timestamp(data.get("timestamp")) or datetime.now(timezone.utc),
    )


def _decode_control_result(data: Mapping[str, Any]) -> ResultEnvelope:
    return ResultEnvelope(
        type=CONTROL_RESULT_TYPE,
        action=_as_text(data.get("action")),
        ok=bool(data.get("ok")),
        message=_as_text(data.get("message")),
        correlation_id=_correlation_id(data),
        filename=_as_text(data.get("filename")),
        target=_as_text(data.get("target")),
        timestamp=parse_timestamp(data.get("timestamp")),
    )


def _decode_upload_result(data: Mapping[str, Any]) -> ResultEnvelope:
    error = _as_text(data.get("error"))
    file_size = data.get("file_size")
    return ResultEnvelope(
        type=UPLOAD_RESULT_TYPE,
        action=_as_text(data.get("action")),
        ok=bool(data.get("success")),
        message=_as_text(data.get("message")) or error,
        correlation_id=_correlation_id(data),
        filename=_as_text(data.get("filename")),
        target=_as_text(data.get("target")),
        file_size=_as_int(file_size) if file_size is not None else None,
        error=error,
        timestamp=parse_timestamp(data.get("timestamp")),
    )


def decode_result_message(payload: Any, *, topic: Optional[str] = None) -> ResultMessage:
    """Decode a result-topic payload.

    Raises :class:`ProtocolParseError` when the payload is not a JSON object or
    a progress envelope carries unreadable details.
    """

    data = parse_json_object(payload, topic=topic)
    message_type = _as_text(data.get("type"))
    action = _as_text(data.get("action"))

    if action == PROGRESS_ACTION:
        return _decode_progress(data, topic)
    if message_type == CONTROL_RESULT_TYPE:
        return _decode_control_result(data)
    if message_type == UPLOAD_RESULT_TYPE:
        return _decode_upload_result(data)

    return UnknownMessage(type=message_type, action=action, raw=data)
