"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .core.redaction import redact_identifiers

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class DeviceIdRedactionFilter(logging.Filter):
    """Rewrite records so full device ids never reach a handler.

    Modules mask the ids they log themselves; this catches the rest, such as
    paho's own topic logging and exception text from callers.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_identifiers(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Configure root logging handlers.

    Every installed handler carries a :class:`DeviceIdRedactionFilter`.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a file handler. When absent, only console logging is configured.
    log_network:
        When true, keep the MQTT client library at the root level to aid diagnostics.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    redaction = DeviceIdRedactionFilter()
    for handler in root.handlers:
        handler.addFilter(redaction)

    if not log_network:
        logging.getLogger("paho").setLevel(logging.WARNING)
        logging.getLogger("printbridge.adapters.mqtt").setLevel(logging.INFO)
