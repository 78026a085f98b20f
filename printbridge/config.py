"""Configuration loader for printbridge."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from . import constants
from .errors import ConfigurationError

UPLOAD_TARGETS = ("sd", "local")


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = constants.DEFAULT_KEEPALIVE_SECONDS
    connect_timeout_seconds: float = constants.DEFAULT_CONNECT_TIMEOUT_SECONDS
    publish_timeout_seconds: float = constants.DEFAULT_PUBLISH_TIMEOUT_SECONDS


@dataclass(slots=True)
class TopicConfig:
    templates: Dict[str, str] = field(
        default_factory=lambda: dict(constants.DEFAULT_TOPIC_TEMPLATES)
    )


@dataclass(slots=True)
class UploadConfig:
    chunk_size: int = constants.DEFAULT_CHUNK_SIZE
    result_timeout_seconds: float = constants.DEFAULT_RESULT_TIMEOUT_SECONDS
    default_target: str = "sd"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class BridgeConfig:
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    topics: TopicConfig = field(default_factory=TopicConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    path: Optional[Path] = None


def _split_host_port(host: str, port: int) -> tuple[str, int]:
    if ":" not in host:
        return host, port
    host_part, port_part = host.rsplit(":", 1)
    try:
        return host_part, int(port_part)
    except ValueError:
        return host, port


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "keepalive": str(constants.DEFAULT_KEEPALIVE_SECONDS),
                "connect_timeout_seconds": str(
                    constants.DEFAULT_CONNECT_TIMEOUT_SECONDS
                ),
                "publish_timeout_seconds": str(
                    constants.DEFAULT_PUBLISH_TIMEOUT_SECONDS
                ),
            },
            "topics": dict(constants.DEFAULT_TOPIC_TEMPLATES),
            "upload": {
                "chunk_size": str(constants.DEFAULT_CHUNK_SIZE),
                "result_timeout_seconds": str(
                    constants.DEFAULT_RESULT_TIMEOUT_SECONDS
                ),
                "default_target": "sd",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    try:
        host, port = _split_host_port(
            parser.get("broker", "host"), parser.getint("broker", "port")
        )
        broker = BrokerConfig(
            host=host,
            port=port,
            username=parser.get("broker", "username", fallback=None),
            password=parser.get("broker", "password", fallback=None),
            client_id=parser.get("broker", "client_id", fallback=None),
            keepalive=max(1, parser.getint("broker", "keepalive")),
            connect_timeout_seconds=max(
                0.1, parser.getfloat("broker", "connect_timeout_seconds")
            ),
            publish_timeout_seconds=max(
                0.1, parser.getfloat("broker", "publish_timeout_seconds")
            ),
        )

        upload = UploadConfig(
            chunk_size=parser.getint("upload", "chunk_size"),
            result_timeout_seconds=parser.getfloat("upload", "result_timeout_seconds"),
            default_target=parser.get("upload", "default_target").strip().lower(),
        )
        log_network = parser.getboolean("logging", "log_network")
    except ValueError as exc:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {exc}") from exc

    if upload.chunk_size <= 0:
        raise ConfigurationError("upload.chunk_size must be positive")
    if upload.result_timeout_seconds <= 0:
        raise ConfigurationError("upload.result_timeout_seconds must be positive")
    if upload.default_target not in UPLOAD_TARGETS:
        raise ConfigurationError(
            f"upload.default_target must be one of {', '.join(UPLOAD_TARGETS)}"
        )

    topics = TopicConfig(
        templates={
            name: parser.get("topics", name)
            for name in constants.DEFAULT_TOPIC_TEMPLATES
        }
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=log_network,
    )

    return BridgeConfig(
        broker=broker,
        topics=topics,
        upload=upload,
        logging=logging_config,
        path=config_path,
    )
