"""Composition root wiring the broker transport to the protocol components."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .adapters import MQTTClient
from .camera import CameraController
from .commands import CommandPublisher
from .config import BridgeConfig, load_config
from .core.registry import ListenerRegistry
from .core.protocols import Transport
from .core.topics import TopicRouter
from .correlator import ResultCorrelator
from .logging import configure_logging
from .status import StatusMonitor
from .uploads import UploadSessionManager

LOGGER = logging.getLogger(__name__)


class PrintBridge:
    """Owns one transport and every component built on top of it.

    A transport can be injected (tests, shared connections); in that case the
    caller owns its connection lifecycle and :meth:`start` does not connect it.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        transport: Optional[Transport] = None,
    ) -> None:
        self.config = config or BridgeConfig()
        # only a client built here is connected and disconnected by the bridge
        self._client: Optional[MQTTClient] = None
        if transport is None:
            self._client = MQTTClient(self.config.broker)
        self.transport: Transport = transport or self._client

        self.router = TopicRouter(self.config.topics.templates)
        self.registry = ListenerRegistry(self.transport)
        self.commands = CommandPublisher(self.transport, self.router)
        self.correlator = ResultCorrelator(
            self.registry,
            self.router,
            default_timeout=self.config.upload.result_timeout_seconds,
        )
        self.uploads = UploadSessionManager(
            self.transport,
            self.router,
            self.correlator,
            chunk_size=self.config.upload.chunk_size,
            result_timeout=self.config.upload.result_timeout_seconds,
            default_target=self.config.upload.default_target,
        )
        self.camera = CameraController(self.transport, self.router, self.registry)
        self.status = StatusMonitor(self.registry, self.router)

        self._started = False
        self._closed = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        if self._client is not None:
            await self._client.connect()
        self._started = True
        LOGGER.info("printbridge ready")

    async def close(self) -> None:
        """Fail in-flight uploads, release every subscription, then disconnect."""

        if self._closed:
            return
        self._closed = True

        self.uploads.close()
        self.correlator.close()
        self.registry.close()

        if self._client is not None and self._started:
            await self._client.disconnect()
        self._started = False
        LOGGER.info("printbridge closed")

    async def __aenter__(self) -> "PrintBridge":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_bridge(
    config_path: Optional[Path] = None, *, configure_logs: bool = True
) -> PrintBridge:
    """Load configuration, configure logging and build a :class:`PrintBridge`."""

    config = load_config(config_path)
    if configure_logs:
        configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
    return PrintBridge(config)
