"""Helpers that keep identifiers, URLs and credentials out of log output."""

from __future__ import annotations

import re
from typing import Any, Mapping

_SENSITIVE_KEY_MARKERS = (
    "url",
    "uri",
    "input",
    "base",
    "password",
    "passwd",
    "secret",
    "token",
    "credential",
    "auth",
    "key",
)

_REDACTED = "***"

_UUID_PATTERN = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)


def mask_identifier(value: object, visible: int = 8) -> str:
    """Return the first ``visible`` characters of an identifier."""

    text = "" if value is None else str(value)
    if len(text) <= visible:
        return text
    return f"{text[:visible]}…"


def redact_identifiers(value: object) -> str:
    """Mask every UUID-shaped device id inside ``value`` (topics, error text)."""

    return _UUID_PATTERN.sub(lambda match: mask_identifier(match.group(0)), str(value))


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_KEY_MARKERS)


def _looks_like_url(value: str) -> bool:
    return "://" in value


def redact_payload(payload: Any) -> Any:
    """Return a copy of ``payload`` safe for logging.

    Fields whose name suggests a URL or credential are replaced, string values
    that look like URLs are replaced, and base64 chunk data is summarised by
    length.
    """

    if isinstance(payload, Mapping):
        redacted: dict[str, Any] = {}
        for key, value in payload.items():
            key_text = str(key)
            if key_text == "data_b64" and isinstance(value, str):
                redacted[key_text] = f"[{len(value)}b64]"
            elif key_text in ("device_id", "device", "deviceUuid"):
                redacted[key_text] = mask_identifier(value)
            elif _is_sensitive_key(key_text) and not isinstance(value, (Mapping, list)):
                redacted[key_text] = _REDACTED
            else:
                redacted[key_text] = redact_payload(value)
        return redacted

    if isinstance(payload, list):
        return [redact_payload(item) for item in payload]

    if isinstance(payload, str) and _looks_like_url(payload):
        return _REDACTED

    return payload
