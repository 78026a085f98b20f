"""Fire-and-forget control commands for remote printer controllers."""

from __future__ import annotations

import json
import logging
import math
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Optional, Union

from . import constants
from .core.protocols import Publisher
from .core.redaction import mask_identifier, redact_identifiers, redact_payload
from .core.topics import TopicRouter
from .errors import TransportError, ValidationError

LOGGER = logging.getLogger(__name__)

HOME_AXES = "XYZ"
BED_TOOL = -1
MAX_NOZZLE_TEMPERATURE = 300.0
MAX_BED_TEMPERATURE = 150.0
FEED_RATE_RANGE = (10.0, 500.0)
FLOW_RATE_RANGE = (10.0, 200.0)
DEFAULT_MOVE_FEEDRATE = 1000.0
PRINT_ORIGINS = ("local", "sdcard")


class CommandType(str, Enum):
    HOME = "home"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    MOVE = "move"
    SET_TEMPERATURE = "set_temperature"
    SET_FEED_RATE = "set_feed_rate"
    SET_FLOW_RATE = "set_flow_rate"


class MoveMode(str, Enum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


def encode_payload(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


async def publish_json(
    publisher: Publisher,
    topic: str,
    payload: Dict[str, Any],
    *,
    qos: int,
    retain: bool = False,
) -> None:
    """Encode and publish ``payload``; failures surface as :class:`TransportError`."""

    try:
        await publisher.publish(topic, encode_payload(payload), qos=qos, retain=retain)
    except TransportError:
        raise
    except Exception as exc:
        raise TransportError(f"Publish to {redact_identifiers(topic)} failed: {exc}") from exc


def _require_number(value: Any, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field=field)
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be finite", field=field)
    return number


def _require_range(value: Any, field: str, lower: float, upper: float) -> float:
    number = _require_number(value, field)
    if number < lower or number > upper:
        raise ValidationError(
            f"{field} must be between {lower:g} and {upper:g} (got {number:g})",
            field=field,
        )
    return number


def _compact(number: float) -> Union[int, float]:
    return int(number) if number.is_integer() else number


def normalize_axes(axes: Union[str, Iterable[str]]) -> str:
    """Normalise an axes selection to an ordered subset of ``XYZ``."""

    if isinstance(axes, str):
        text = axes.strip().upper()
        letters = HOME_AXES if text == "ALL" else text
    else:
        letters = "".join(str(axis).strip().upper() for axis in axes)

    if not letters:
        raise ValidationError("At least one axis must be given", field="axes")
    unknown = sorted(set(letters) - set(HOME_AXES))
    if unknown:
        raise ValidationError(
            f"Unknown axes: {', '.join(unknown)}", field="axes"
        )
    return "".join(axis for axis in HOME_AXES if axis in letters)


class CommandPublisher:
    """Encodes control intents and publishes them without awaiting a reply.

    State-changing commands use at-least-once delivery; jog moves and
    dashboard queries use at-most-once since a stale jog is worse than a lost
    one.
    """

    def __init__(self, publisher: Publisher, router: TopicRouter) -> None:
        self._publisher = publisher
        self._router = router

    async def home(self, device_id: str, axes: Union[str, Iterable[str]] = HOME_AXES) -> None:
        payload = {"type": CommandType.HOME.value, "axes": normalize_axes(axes)}
        await self._send_control(device_id, payload, qos=constants.QOS_AT_LEAST_ONCE)

    async def pause(self, device_id: str) -> None:
        await self._send_control(
            device_id, {"type": CommandType.PAUSE.value}, qos=constants.QOS_AT_LEAST_ONCE
        )

    async def resume(self, device_id: str) -> None:
        await self._send_control(
            device_id, {"type": CommandType.RESUME.value}, qos=constants.QOS_AT_LEAST_ONCE
        )

    async def cancel(self, device_id: str) -> None:
        await self._send_control(
            device_id, {"type": CommandType.CANCEL.value}, qos=constants.QOS_AT_LEAST_ONCE
        )

    async def move(
        self,
        device_id: str,
        mode: Union[MoveMode, str] = MoveMode.RELATIVE,
        *,
        x: Optional[float] = None,
        y: Optional[float] = None,
        z: Optional[float] = None,
        e: Optional[float] = None,
        feedrate: float = DEFAULT_MOVE_FEEDRATE,
    ) -> None:
        """Jog one or more axes; ``feedrate`` is in mm/min."""

        try:
            move_mode = MoveMode(mode)
        except ValueError:
            raise ValidationError(
                f"mode must be 'relative' or 'absolute' (got {mode!r})", field="mode"
            ) from None

        payload: Dict[str, Any] = {"type": CommandType.MOVE.value, "mode": move_mode.value}
        for axis, value in (("x", x), ("y", y), ("z", z), ("e", e)):
            if value is not None:
                payload[axis] = _compact(_require_number(value, axis))
        if len(payload) == 2:
            raise ValidationError("move requires at least one of x, y, z, e", field="axes")

        rate = _require_number(feedrate, "feedrate")
        if rate <= 0:
            raise ValidationError("feedrate must be positive", field="feedrate")
        payload["feedrate"] = _compact(rate)

        await self._send_control(device_id, payload, qos=constants.QOS_AT_MOST_ONCE)

    async def set_temperature(
        self, device_id: str, tool: int, temperature: float, *, wait: bool = False
    ) -> None:
        """Set a heater target; ``tool`` -1 addresses the bed."""

        if isinstance(tool, bool) or not isinstance(tool, int) or tool < BED_TOOL:
            raise ValidationError("tool must be an integer >= -1", field="tool")
        upper = MAX_BED_TEMPERATURE if tool == BED_TOOL else MAX_NOZZLE_TEMPERATURE
        value = _require_range(temperature, "temperature", 0.0, upper)

        payload: Dict[str, Any] = {
            "type": CommandType.SET_TEMPERATURE.value,
            "tool": tool,
            "temperature": _compact(value),
        }
        if wait:
            payload["wait"] = True
        await self._send_control(device_id, payload, qos=constants.QOS_AT_LEAST_ONCE)

    async def set_feed_rate_factor(self, device_id: str, percent: float) -> None:
        value = _require_range(percent, "percent", *FEED_RATE_RANGE)
        payload = {"type": CommandType.SET_FEED_RATE.value, "factor": _compact(value)}
        await self._send_control(device_id, payload, qos=constants.QOS_AT_LEAST_ONCE)

    async def set_flow_rate_factor(self, device_id: str, percent: float) -> None:
        value = _require_range(percent, "percent", *FLOW_RATE_RANGE)
        payload = {"type": CommandType.SET_FLOW_RATE.value, "factor": _compact(value)}
        await self._send_control(device_id, payload, qos=constants.QOS_AT_LEAST_ONCE)

    async def print_file(
        self,
        device_id: str,
        filename: str,
        origin: str = "local",
        *,
        job_id: Optional[str] = None,
    ) -> str:
        """Start printing a file already stored on the controller.

        Returns the job id sent with the request.
        """

        if not isinstance(filename, str) or not filename.strip():
            raise ValidationError("filename is required", field="filename")
        if origin not in PRINT_ORIGINS:
            raise ValidationError(
                f"origin must be one of {', '.join(PRINT_ORIGINS)}", field="origin"
            )

        resolved_job_id = job_id or PurePosixPath(filename).stem or filename
        payload = {
            "action": "print",
            "filename": filename,
            "origin": origin,
            "job_id": resolved_job_id,
        }
        topic = self._router.gcode_ingest(device_id)
        LOGGER.info(
            "Requesting print of %s from %s on device %s",
            filename,
            origin,
            mask_identifier(device_id),
        )
        await publish_json(self._publisher, topic, payload, qos=constants.QOS_AT_LEAST_ONCE)
        return resolved_job_id

    async def send_dashboard_command(self, device_id: str, cmd: str) -> None:
        if not isinstance(cmd, str) or not cmd.strip():
            raise ValidationError("cmd is required", field="cmd")
        topic = self._router.dashboard_query(device_id)
        payload = {"type": "command", "cmd": cmd.strip()}
        LOGGER.debug("TX %s %s", redact_identifiers(topic), redact_payload(payload))
        await publish_json(self._publisher, topic, payload, qos=constants.QOS_AT_MOST_ONCE)

    async def _send_control(self, device_id: str, payload: Dict[str, Any], *, qos: int) -> None:
        topic = self._router.control_command(device_id)
        LOGGER.debug(
            "TX control %s for device %s (qos=%s): %s",
            payload.get("type"),
            mask_identifier(device_id),
            qos,
            redact_payload(payload),
        )
        try:
            await publish_json(self._publisher, topic, payload, qos=qos)
        except TransportError as exc:
            LOGGER.error(
                "Failed to publish %s command to device %s: %s",
                payload.get("type"),
                mask_identifier(device_id),
                redact_identifiers(exc),
            )
            raise
