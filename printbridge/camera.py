"""Camera stream control and camera-state observation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from . import constants
from .commands import publish_json
from .core.protocols import Publisher
from .core.redaction import mask_identifier, redact_payload
from .core.registry import ListenerRegistry, Subscription
from .core.topics import TopicRouter, validate_device_id
from .errors import ValidationError
from .printer_state import CameraState, decode_camera_state

LOGGER = logging.getLogger(__name__)

CameraCallback = Callable[[CameraState], None]

DEFAULT_RTSP_BASE = "rtsp://factor.io.kr:8554"
DEFAULT_WEBRTC_BASE = "https://factor.io.kr/webrtc"


def _stream_name() -> str:
    return f"cam-{uuid.uuid4()}"


@dataclass(slots=True)
class CameraStreamOptions:
    """Encoder settings sent with a camera ``start`` command."""

    name: str = field(default_factory=_stream_name)
    fps: int = 20
    width: int = 1280
    height: int = 720
    bitrate_kbps: int = 1800
    encoder: str = "libx264"
    force_mjpeg: bool = True
    low_latency: bool = True
    rtsp_base: str = DEFAULT_RTSP_BASE
    webrtc_base: str = DEFAULT_WEBRTC_BASE

    def to_payload(self, stream_url: str) -> Dict[str, Any]:
        for key in ("fps", "width", "height", "bitrate_kbps"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationError(f"{key} must be a positive integer", field=key)
        return {
            "name": self.name,
            "input": stream_url,
            "fps": self.fps,
            "width": self.width,
            "height": self.height,
            "bitrateKbps": self.bitrate_kbps,
            "encoder": self.encoder,
            "forceMjpeg": self.force_mjpeg,
            "lowLatency": self.low_latency,
            "rtsp_base": self.rtsp_base,
            "webrtc_base": self.webrtc_base,
        }


class CameraController:
    """Starts and stops device-side camera relays and watches their state."""

    def __init__(
        self, publisher: Publisher, router: TopicRouter, registry: ListenerRegistry
    ) -> None:
        self._publisher = publisher
        self._router = router
        self._registry = registry
        self._streams: Dict[str, str] = {}

    def stream_name(self, device_id: str) -> Optional[str]:
        return self._streams.get(validate_device_id(device_id))

    async def start(
        self,
        device_id: str,
        stream_url: str,
        options: Optional[CameraStreamOptions] = None,
    ) -> str:
        """Ask the device to relay ``stream_url``; returns the stream name."""

        if not isinstance(stream_url, str) or not stream_url.strip():
            raise ValidationError("stream_url is required", field="stream_url")

        device = validate_device_id(device_id)
        opts = options or CameraStreamOptions()
        payload = {
            "type": "camera",
            "action": "start",
            "options": opts.to_payload(stream_url.strip()),
        }
        topic = self._router.camera_command(device)
        LOGGER.info(
            "Starting camera stream %s on device %s: %s",
            opts.name,
            mask_identifier(device),
            redact_payload(payload["options"]),
        )
        await publish_json(self._publisher, topic, payload, qos=constants.QOS_AT_LEAST_ONCE)
        self._streams[device] = opts.name
        return opts.name

    async def stop(self, device_id: str, name: Optional[str] = None) -> None:
        device = validate_device_id(device_id)
        stream = name or self._streams.get(device)
        options: Dict[str, Any] = {"name": stream} if stream else {}
        payload = {"type": "camera", "action": "stop", "options": options}

        LOGGER.info(
            "Stopping camera stream %s on device %s",
            stream or "<default>",
            mask_identifier(device),
        )
        await publish_json(
            self._publisher,
            self._router.camera_command(device),
            payload,
            qos=constants.QOS_AT_LEAST_ONCE,
        )
        if self._streams.get(device) == stream:
            self._streams.pop(device, None)

    def watch(self, device_id: str, callback: CameraCallback) -> Subscription:
        """Deliver a decoded :class:`CameraState` for every camera-state message."""

        topic = self._router.camera_state(device_id)

        def _on_message(_topic: str, payload: bytes) -> None:
            callback(decode_camera_state(payload))

        return self._registry.subscribe(topic, _on_message, qos=constants.QOS_AT_LEAST_ONCE)
