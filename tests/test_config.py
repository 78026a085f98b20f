from pathlib import Path

import pytest

from printbridge import constants
from printbridge.config import load_config
from printbridge.errors import ConfigurationError


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "printbridge.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.broker.host == "localhost"
    assert config.broker.port == 1883
    assert config.broker.username is None
    assert config.broker.client_id is None
    assert config.broker.keepalive == 60
    assert config.broker.publish_timeout_seconds == 10.0
    assert config.upload.chunk_size == 32 * 1024
    assert config.upload.result_timeout_seconds == 120.0
    assert config.upload.default_target == "sd"
    assert config.topics.templates == constants.DEFAULT_TOPIC_TEMPLATES
    assert config.logging.level == "INFO"
    assert config.logging.path is None
    assert config.logging.log_network is False


def test_load_config_parses_broker_host_with_port(tmp_path: Path) -> None:
    config_path = tmp_path / "printbridge.cfg"
    config_path.write_text("[broker]\nhost = broker.farm.local:8883\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.broker.host == "broker.farm.local"
    assert config.broker.port == 8883


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "printbridge.cfg"
    config_file.write_text(
        """
[broker]
host = mqtt.example.com
port = 1884
username = operator
password = s3cret
client_id = bridge-01
keepalive = 30

[topics]
control_command = farm/{device}/control

[upload]
chunk_size = 16384
result_timeout_seconds = 45
default_target = LOCAL

[logging]
level = DEBUG
path = ~/bridge.log
log_network = true
        """.strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.broker.host == "mqtt.example.com"
    assert config.broker.port == 1884
    assert config.broker.username == "operator"
    assert config.broker.password == "s3cret"
    assert config.broker.client_id == "bridge-01"
    assert config.broker.keepalive == 30
    assert config.topics.templates["control_command"] == "farm/{device}/control"
    assert config.topics.templates["camera_state"] == "camera/{device}/state"
    assert config.upload.chunk_size == 16384
    assert config.upload.result_timeout_seconds == 45.0
    assert config.upload.default_target == "local"
    assert config.logging.level == "DEBUG"
    assert config.logging.path == Path("~/bridge.log").expanduser()
    assert config.logging.log_network is True


@pytest.mark.parametrize(
    "body",
    [
        "[broker]\nport = not-a-number\n",
        "[upload]\nchunk_size = 0\n",
        "[upload]\nresult_timeout_seconds = -1\n",
        "[upload]\ndefault_target = usb\n",
        "[logging]\nlog_network = maybe\n",
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, body: str) -> None:
    config_file = tmp_path / "printbridge.cfg"
    config_file.write_text(body, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_config(config_file)
