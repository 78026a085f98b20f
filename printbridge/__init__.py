"""Broker-relayed command, upload and status protocol for remote 3D printers."""

from .app import PrintBridge, create_bridge
from .camera import CameraController, CameraStreamOptions
from .commands import CommandPublisher
from .config import BridgeConfig, load_config
from .correlator import PendingResult, ResultCorrelator, ResultOutcome, ResultStatus
from .errors import (
    ConfigurationError,
    InvalidDeviceId,
    LogicError,
    PrintBridgeError,
    ProtocolParseError,
    ResultTimeoutError,
    TransportError,
    ValidationError,
)
from .printer_state import CameraState, PrinterState, PrinterStatus, decode_camera_state, decode_printer_status
from .status import StatusMonitor
from .uploads import ProgressEvent, UploadOutcome, UploadSession, UploadSessionManager, UploadState

__all__ = [
    "BridgeConfig",
    "CameraController",
    "CameraState",
    "CameraStreamOptions",
    "CommandPublisher",
    "ConfigurationError",
    "InvalidDeviceId",
    "LogicError",
    "PendingResult",
    "PrintBridge",
    "PrintBridgeError",
    "PrinterState",
    "PrinterStatus",
    "ProgressEvent",
    "ProtocolParseError",
    "ResultCorrelator",
    "ResultOutcome",
    "ResultStatus",
    "ResultTimeoutError",
    "StatusMonitor",
    "TransportError",
    "UploadOutcome",
    "UploadSession",
    "UploadSessionManager",
    "UploadState",
    "ValidationError",
    "create_bridge",
    "decode_camera_state",
    "decode_printer_status",
    "load_config",
]
