"""Error taxonomy shared across printbridge components."""

from __future__ import annotations

from typing import Optional


class PrintBridgeError(RuntimeError):
    """Base class for all printbridge errors."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ConfigurationError(PrintBridgeError):
    """Raised when configuration values are missing or malformed."""


class ValidationError(PrintBridgeError, ValueError):
    """Raised when a command parameter is rejected client-side.

    Validation failures are fatal for the call and are never retried.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        code: Optional[str] = "validation_error",
    ) -> None:
        super().__init__(message, code=code)
        self.field = field


class InvalidDeviceId(ValidationError):
    """Raised when a device identifier does not have the UUID shape."""

    def __init__(self, device_id: object) -> None:
        super().__init__(
            f"Invalid device id: {device_id!r}",
            field="device_id",
            code="invalid_device_id",
        )
        self.device_id = device_id


class TransportError(PrintBridgeError):
    """Raised when the broker connection fails to connect, publish or subscribe."""


class ResultTimeoutError(PrintBridgeError):
    """Raised when no terminal result arrived before the deadline.

    Distinct from :class:`TransportError`: the request was sent, but nothing
    came back in time.
    """

    def __init__(
        self,
        message: str,
        *,
        correlation_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(message, code="timeout")
        self.correlation_id = correlation_id
        self.timeout = timeout


class ProtocolParseError(PrintBridgeError):
    """Raised when an inbound payload cannot be decoded.

    Listeners log and drop these; they never propagate out of dispatch.
    """

    def __init__(self, message: str, *, topic: Optional[str] = None) -> None:
        super().__init__(message, code="protocol_parse_error")
        self.topic = topic


class LogicError(PrintBridgeError):
    """Raised when a local invariant is violated (programming error)."""
