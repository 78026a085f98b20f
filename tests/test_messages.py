"""Tests for result-topic message decoding."""

import json
from datetime import datetime, timezone

import pytest

from printbridge.core.messages import (
    ResultEnvelope,
    UnknownMessage,
    UploadProgress,
    decode_result_message,
    parse_json_object,
    parse_timestamp,
)
from printbridge.errors import ProtocolParseError


def _progress(details, **extra):
    payload = {"action": "sd_upload_progress", "message": details}
    payload.update(extra)
    return json.dumps(payload).encode("utf-8")


class TestProgressEnvelopes:
    def test_message_as_json_string(self) -> None:
        details = json.dumps(
            {
                "upload_id": "job-1",
                "stage": "mqtt_chunk",
                "name": "part.gcode",
                "received_bytes": 50,
                "total_bytes": 200,
                "percent": 99,
            }
        )

        message = decode_result_message(_progress(details, timestamp=1700000000000))

        assert isinstance(message, UploadProgress)
        assert message.correlation_id == "job-1"
        assert message.stage == "mqtt_chunk"
        assert message.name == "part.gcode"
        assert message.received_bytes == 50
        assert message.total_bytes == 200
        # derived from bytes, not the reported percent
        assert message.percent == 25.0
        assert message.timestamp == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_message_as_object(self) -> None:
        message = decode_result_message(
            _progress({"upload_id": "job-2", "stage": "to_printer", "percent": 40})
        )

        assert isinstance(message, UploadProgress)
        assert message.correlation_id == "job-2"
        assert message.total_bytes == 0
        assert message.percent == 40.0

    def test_missing_upload_id(self) -> None:
        message = decode_result_message(_progress({"stage": "to_printer", "percent": 10}))

        assert isinstance(message, UploadProgress)
        assert message.correlation_id is None

    def test_unreadable_details_raise(self) -> None:
        with pytest.raises(ProtocolParseError):
            decode_result_message(_progress("{not json"))
        with pytest.raises(ProtocolParseError):
            decode_result_message(_progress(None))


class TestTerminalEnvelopes:
    def test_control_result(self) -> None:
        message = decode_result_message(
            {"type": "control_result", "action": "sd_upload", "ok": False, "message": "disk full"}
        )

        assert message == ResultEnvelope(
            type="control_result", action="sd_upload", ok=False, message="disk full"
        )

    def test_upload_result(self) -> None:
        message = decode_result_message(
            json.dumps(
                {
                    "type": "upload_result",
                    "job_id": "job-9",
                    "success": True,
                    "filename": "cube.gcode",
                    "target": "sd",
                    "file_size": 2048,
                    "timestamp": "2024-03-01T10:00:00Z",
                }
            )
        )

        assert isinstance(message, ResultEnvelope)
        assert message.ok is True
        assert message.correlation_id == "job-9"
        assert message.filename == "cube.gcode"
        assert message.file_size == 2048
        assert message.timestamp == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_upload_result_error_becomes_message(self) -> None:
        message = decode_result_message(
            {"type": "upload_result", "job_id": "job-9", "success": False, "error": "crc"}
        )

        assert message.ok is False
        assert message.message == "crc"
        assert message.error == "crc"


def test_unknown_variant_is_not_an_error() -> None:
    message = decode_result_message({"type": "telemetry", "temp": 200})

    assert isinstance(message, UnknownMessage)
    assert message.type == "telemetry"
    assert message.raw == {"type": "telemetry", "temp": 200}


@pytest.mark.parametrize("payload", [b"\xff\xfe", b"[1, 2]", b"not json", 12])
def test_parse_json_object_rejects_garbage(payload) -> None:
    with pytest.raises(ProtocolParseError) as excinfo:
        parse_json_object(payload, topic="control_result/x")

    assert excinfo.value.topic == "control_result/x"


@pytest.mark.parametrize(
    "value,expected",
    [
        (1700000000, datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)),
        (1700000000000, datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)),
        ("2024-03-01T10:00:00", datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)),
        ("yesterday", None),
        (None, None),
        (True, None),
    ],
)
def test_parse_timestamp(value, expected) -> None:
    assert parse_timestamp(value) == expected
