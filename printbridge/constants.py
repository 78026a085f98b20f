"""Constants used across the printbridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "printbridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / f".{APP_NAME}" / DEFAULT_CONFIG_FILENAME
DEFAULT_LOG_PATH = Path.home() / f".{APP_NAME}" / "logs" / f"{APP_NAME}.log"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_KEEPALIVE_SECONDS = 60

# Topic templates; ``{device}`` is replaced by the validated device id.
DEFAULT_TOPIC_TEMPLATES = {
    "control_command": "control/{device}",
    "control_result": "control_result/{device}",
    "dashboard_query": "dashboard/{device}",
    "dashboard_status": "dash_status/{device}",
    "gcode_ingest": "octoprint/gcode_in/{device}",
    "gcode_result": "octoprint/gcode_result/{device}",
    "camera_command": "camera/{device}/cmd",
    "camera_state": "camera/{device}/state",
}

DEFAULT_CHUNK_SIZE = 32 * 1024
DEFAULT_RESULT_TIMEOUT_SECONDS = 120.0
DEFAULT_PUBLISH_TIMEOUT_SECONDS = 10.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0

# MQTT quality-of-service levels.
QOS_AT_MOST_ONCE = 0
QOS_AT_LEAST_ONCE = 1
QOS_EXACTLY_ONCE = 2
