"""Normalisation of camera and printer status payloads.

Upstream payloads drift across firmware versions: field names change, flags
move around, progress switches between percent and fractions. The decoders in
this module absorb that drift and always return a valid snapshot; malformed
or partial input degrades to an offline default instead of raising.

Printer state resolution follows OctoPrint semantics:

1. ``state.flags`` are authoritative (``ready`` forces ``operational``)
2. ``connection[0]`` / ``state.text`` are consulted only when no flag decides
3. no flags at all means the controller is offline
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

from .core.messages import parse_json_object
from .errors import ProtocolParseError

LOGGER = logging.getLogger(__name__)

__all__ = [
    "CameraState",
    "PrinterState",
    "PrinterStatus",
    "Temperature",
    "decode_camera_state",
    "decode_printer_status",
]


class PrinterState:
    """Canonical normalised printer states."""

    OPERATIONAL = "operational"
    PRINTING = "printing"
    PAUSED = "paused"
    ERROR = "error"
    OFFLINE = "offline"


CONNECTED_FLAGS = ("operational", "printing", "paused", "ready", "error")

_STATE_TEXT_MAP = {
    "operational": PrinterState.OPERATIONAL,
    "ready": PrinterState.OPERATIONAL,
    "idle": PrinterState.OPERATIONAL,
    "standby": PrinterState.OPERATIONAL,
    "printing": PrinterState.PRINTING,
    "printing from sd": PrinterState.PRINTING,
    "starting": PrinterState.PRINTING,
    "resuming": PrinterState.PRINTING,
    "paused": PrinterState.PAUSED,
    "pausing": PrinterState.PAUSED,
    "error": PrinterState.ERROR,
    "offline after error": PrinterState.ERROR,
    "offline": PrinterState.OFFLINE,
    "closed": PrinterState.OFFLINE,
    "closed_with_error": PrinterState.ERROR,
}

# Ordered legacy locations of the WebRTC playback URL.
_WEBRTC_URL_PATHS = (
    ("webrtc", "play_url_webrtc"),
    ("play_url_webrtc",),
    ("url",),
)


@dataclass(frozen=True, slots=True)
class CameraState:
    running: bool = False
    webrtc_url: Optional[str] = None
    status: str = "offline"


@dataclass(frozen=True, slots=True)
class Temperature:
    actual: Optional[float] = None
    target: Optional[float] = None


@dataclass(frozen=True, slots=True)
class PrinterStatus:
    connected: bool = False
    state: str = PrinterState.OFFLINE
    flags: Mapping[str, bool] = field(default_factory=dict)
    state_text: Optional[str] = None
    printing: bool = False
    current_file: Optional[str] = None
    error_message: Optional[str] = None
    completion: float = 0.0
    print_time_left: Optional[float] = None
    temperatures: Mapping[str, Temperature] = field(default_factory=dict)


def _load(payload: Any) -> Optional[dict[str, Any]]:
    try:
        return parse_json_object(payload)
    except ProtocolParseError as exc:
        LOGGER.debug("Treating undecodable status payload as offline: %s", exc)
        return None


def _lookup(data: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _is_hls(url: str) -> bool:
    return urlparse(url).path.lower().endswith(".m3u8")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def decode_camera_state(payload: Any) -> CameraState:
    """Decode a camera-state message.

    ``running`` must be an explicit boolean; the WebRTC URL is taken from the
    first legacy field that holds a non-HLS URL.
    """

    data = _load(payload)
    if data is None:
        return CameraState()

    running = data.get("running") is True

    webrtc_url: Optional[str] = None
    for path in _WEBRTC_URL_PATHS:
        candidate = _lookup(data, path)
        if isinstance(candidate, str) and candidate.strip() and not _is_hls(candidate):
            webrtc_url = candidate.strip()
            break

    return CameraState(
        running=running,
        webrtc_url=webrtc_url,
        status="online" if running else "offline",
    )


def _extract_flags(data: Mapping[str, Any]) -> dict[str, bool]:
    raw_flags = _lookup(data, ("state", "flags"))
    if not isinstance(raw_flags, Mapping):
        raw_flags = data.get("flags")
    if not isinstance(raw_flags, Mapping):
        return {}
    return {
        str(key): bool(value) if isinstance(value, (bool, int)) else False
        for key, value in raw_flags.items()
    }


def _state_text(data: Mapping[str, Any]) -> Optional[str]:
    connection = data.get("connection")
    if isinstance(connection, list) and connection and isinstance(connection[0], str):
        return connection[0]
    text = _lookup(data, ("state", "text"))
    if isinstance(text, str):
        return text
    state = data.get("state")
    if isinstance(state, str):
        return state
    return None


def _resolve_state(flags: Mapping[str, bool], connected: bool, text: Optional[str]) -> str:
    if flags.get("ready"):
        return PrinterState.OPERATIONAL
    if flags.get("error"):
        return PrinterState.ERROR
    if flags.get("printing"):
        return PrinterState.PRINTING
    if flags.get("paused"):
        return PrinterState.PAUSED
    if flags.get("operational"):
        return PrinterState.OPERATIONAL
    if not connected:
        return PrinterState.OFFLINE

    normalized = (text or "").strip().lower()
    return _STATE_TEXT_MAP.get(normalized, PrinterState.OPERATIONAL)


def _completion(data: Mapping[str, Any]) -> float:
    progress = data.get("progress")
    progress = progress if isinstance(progress, Mapping) else {}

    percent = _number(progress.get("completion"))
    if percent is None:
        percent = _number(progress.get("file_pct"))
    if percent is not None:
        return max(0.0, min(1.0, percent / 100.0))

    filepos = _number(progress.get("filepos"))
    size = _number(_lookup(data, ("job", "file", "size")))
    if filepos is not None and size:
        return max(0.0, min(1.0, filepos / size))
    return 0.0


def _temperatures(data: Mapping[str, Any]) -> dict[str, Temperature]:
    temps = data.get("temperatures")
    if not isinstance(temps, Mapping):
        temps = data.get("temperature")
    if not isinstance(temps, Mapping):
        return {}

    result: dict[str, Temperature] = {}
    for name, reading in temps.items():
        if not isinstance(reading, Mapping):
            continue
        actual = _number(reading.get("actual"))
        if actual is None:
            actual = _number(reading.get("current"))
        result[str(name)] = Temperature(actual=actual, target=_number(reading.get("target")))
    return result


def decode_printer_status(payload: Any) -> PrinterStatus:
    """Decode a dashboard status message into a :class:`PrinterStatus`."""

    data = _load(payload)
    if data is None:
        return PrinterStatus()

    flags = _extract_flags(data)
    connected = any(flags.get(name) for name in CONNECTED_FLAGS)
    text = _state_text(data)
    state = _resolve_state(flags, connected, text)

    job = data.get("job")
    current_file = _lookup(job, ("file", "name")) if isinstance(job, Mapping) else None
    error_message = _lookup(data, ("state", "error"))
    if not isinstance(error_message, str):
        error_message = data.get("error") if isinstance(data.get("error"), str) else None

    progress = data.get("progress")
    time_left = None
    if isinstance(progress, Mapping):
        time_left = _number(progress.get("printTimeLeft"))
        if time_left is None:
            time_left = _number(progress.get("time_left"))

    return PrinterStatus(
        connected=connected,
        state=state,
        flags=flags,
        state_text=text,
        printing=flags.get("printing", False),
        current_file=current_file if isinstance(current_file, str) else None,
        error_message=error_message,
        completion=_completion(data),
        print_time_left=time_left,
        temperatures=_temperatures(data),
    )
