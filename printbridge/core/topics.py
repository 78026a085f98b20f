"""Mapping from device identifiers and command families to broker topics."""

from __future__ import annotations

import re
from enum import Enum
from typing import Mapping, Optional

from .. import constants
from ..errors import ConfigurationError, InvalidDeviceId

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class TopicFamily(str, Enum):
    CONTROL_COMMAND = "control_command"
    CONTROL_RESULT = "control_result"
    DASHBOARD_QUERY = "dashboard_query"
    DASHBOARD_STATUS = "dashboard_status"
    GCODE_INGEST = "gcode_ingest"
    GCODE_RESULT = "gcode_result"
    CAMERA_COMMAND = "camera_command"
    CAMERA_STATE = "camera_state"


def validate_device_id(device_id: object) -> str:
    """Return the canonical (lower-case) form of a UUID-shaped device id."""

    if not isinstance(device_id, str):
        raise InvalidDeviceId(device_id)
    candidate = device_id.strip()
    if not _UUID_PATTERN.match(candidate):
        raise InvalidDeviceId(device_id)
    return candidate.lower()


def is_valid_device_id(device_id: object) -> bool:
    try:
        validate_device_id(device_id)
    except InvalidDeviceId:
        return False
    return True


def topic_matches(pattern: str, topic: str) -> bool:
    """Match ``topic`` against an MQTT subscription pattern (``+`` and ``#``)."""

    if pattern == topic:
        return True

    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")

    for index, level in enumerate(pattern_levels):
        if level == "#":
            return True
        if index >= len(topic_levels):
            return False
        if level == "+":
            continue
        if level != topic_levels[index]:
            return False

    return len(pattern_levels) == len(topic_levels)


class TopicRouter:
    """Pure mapping of (device id, family) to topic strings.

    Identical inputs always produce identical topics, which keeps
    subscribe/unsubscribe pairs idempotent.
    """

    def __init__(self, templates: Optional[Mapping[str, str]] = None) -> None:
        merged = dict(constants.DEFAULT_TOPIC_TEMPLATES)
        if templates:
            merged.update(templates)

        self._templates: dict[TopicFamily, str] = {}
        for family in TopicFamily:
            template = merged.get(family.value)
            if template is None:
                raise ConfigurationError(f"Missing topic template for {family.value}")
            if template.count("{device}") != 1:
                raise ConfigurationError(
                    f"Topic template for {family.value} must contain exactly one "
                    f"{{device}} placeholder: {template!r}"
                )
            if "+" in template or "#" in template:
                raise ConfigurationError(
                    f"Topic template for {family.value} must not contain wildcards"
                )
            self._templates[family] = template

    def topic(self, device_id: str, family: TopicFamily) -> str:
        canonical = validate_device_id(device_id)
        return self._templates[TopicFamily(family)].replace("{device}", canonical)

    def device_from_topic(self, topic: str, family: TopicFamily) -> Optional[str]:
        """Extract the device id from a concrete topic of ``family``."""

        prefix, _, suffix = self._templates[TopicFamily(family)].partition("{device}")
        if not topic.startswith(prefix) or not topic.endswith(suffix):
            return None
        candidate = topic[len(prefix) : len(topic) - len(suffix)]
        return candidate.lower() if is_valid_device_id(candidate) else None

    def control_command(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.CONTROL_COMMAND)

    def control_result(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.CONTROL_RESULT)

    def dashboard_query(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.DASHBOARD_QUERY)

    def dashboard_status(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.DASHBOARD_STATUS)

    def gcode_ingest(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.GCODE_INGEST)

    def gcode_result(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.GCODE_RESULT)

    def camera_command(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.CAMERA_COMMAND)

    def camera_state(self, device_id: str) -> str:
        return self.topic(device_id, TopicFamily.CAMERA_STATE)
