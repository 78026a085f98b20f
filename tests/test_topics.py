"""Tests for the topic router."""

import pytest

from printbridge.core.topics import (
    TopicFamily,
    TopicRouter,
    is_valid_device_id,
    topic_matches,
    validate_device_id,
)
from printbridge.errors import ConfigurationError, InvalidDeviceId, ValidationError

DEVICE_ID = "3f2b8c1e-9a4d-4e21-b7c5-0d6f1a2b3c4d"


class TestTopicRouter:
    def test_default_topics(self) -> None:
        router = TopicRouter()

        assert router.control_command(DEVICE_ID) == f"control/{DEVICE_ID}"
        assert router.control_result(DEVICE_ID) == f"control_result/{DEVICE_ID}"
        assert router.dashboard_query(DEVICE_ID) == f"dashboard/{DEVICE_ID}"
        assert router.dashboard_status(DEVICE_ID) == f"dash_status/{DEVICE_ID}"
        assert router.gcode_ingest(DEVICE_ID) == f"octoprint/gcode_in/{DEVICE_ID}"
        assert router.gcode_result(DEVICE_ID) == f"octoprint/gcode_result/{DEVICE_ID}"
        assert router.camera_command(DEVICE_ID) == f"camera/{DEVICE_ID}/cmd"
        assert router.camera_state(DEVICE_ID) == f"camera/{DEVICE_ID}/state"

    def test_identical_inputs_give_identical_topics(self) -> None:
        router = TopicRouter()

        upper = DEVICE_ID.upper()
        assert router.topic(upper, TopicFamily.GCODE_INGEST) == router.gcode_ingest(DEVICE_ID)
        assert router.topic(DEVICE_ID, "camera_state") == router.camera_state(DEVICE_ID)

    @pytest.mark.parametrize(
        "device_id",
        [
            "",
            "not-a-uuid",
            f"{DEVICE_ID}/#",
            "+",
            "3f2b8c1e-9a4d-4e21-b7c5-0d6f1a2b3c4",
            "3f2b8c1e9a4d4e21b7c50d6f1a2b3c4d",
            None,
            42,
        ],
    )
    def test_rejects_malformed_device_ids(self, device_id) -> None:
        router = TopicRouter()

        with pytest.raises(InvalidDeviceId):
            router.control_command(device_id)

    def test_invalid_device_id_is_a_validation_error(self) -> None:
        with pytest.raises(ValidationError) as excinfo:
            validate_device_id("printer/1")

        assert excinfo.value.field == "device_id"
        assert excinfo.value.code == "invalid_device_id"

    def test_custom_templates_override_defaults(self) -> None:
        router = TopicRouter({"control_command": "farm/{device}/control"})

        assert router.control_command(DEVICE_ID) == f"farm/{DEVICE_ID}/control"
        assert router.control_result(DEVICE_ID) == f"control_result/{DEVICE_ID}"

    @pytest.mark.parametrize(
        "template",
        ["control/static", "control/{device}/{device}", "control/+/{device}", "control/{device}/#"],
    )
    def test_rejects_bad_templates(self, template: str) -> None:
        with pytest.raises(ConfigurationError):
            TopicRouter({"control_command": template})

    def test_device_from_topic(self) -> None:
        router = TopicRouter()

        assert (
            router.device_from_topic(f"camera/{DEVICE_ID}/state", TopicFamily.CAMERA_STATE)
            == DEVICE_ID
        )
        assert router.device_from_topic("camera/oops/state", TopicFamily.CAMERA_STATE) is None
        assert router.device_from_topic(f"dashboard/{DEVICE_ID}", TopicFamily.CAMERA_STATE) is None


def test_is_valid_device_id() -> None:
    assert is_valid_device_id(DEVICE_ID)
    assert is_valid_device_id(f"  {DEVICE_ID.upper()}  ")
    assert not is_valid_device_id("device-1")


@pytest.mark.parametrize(
    "pattern,topic,expected",
    [
        ("control/abc", "control/abc", True),
        ("control/+", "control/abc", True),
        ("control/+", "control/abc/extra", False),
        ("camera/+/state", "camera/abc/state", True),
        ("camera/#", "camera/abc/state", True),
        ("camera/#", "camera", True),
        ("dashboard/abc", "dashboard/abd", False),
        ("a/b/c", "a/b", False),
    ],
)
def test_topic_matches(pattern: str, topic: str, expected: bool) -> None:
    assert topic_matches(pattern, topic) is expected
