"""Tests for core data models and the welcome job wire format."""
import json
import pytest
from pydantic import ValidationError

from models.schemas import (
    MalformedJobError, MessageType, TriggerEvent, WelcomeJob, WelcomeMessage,
    WelcomePayload, format_welcome_content, WELCOME_JOB_TYPE,
)


WIRE_JOB = {
    "type": "welcome-message",
    "payload": {
        "subscriberId": "fan_42",
        "creatorId": "creator_1",
        "subject": "Hi",
        "content": "Welcome",
        "welcomeMessageId": "wm_001",
    },
    "delayMs": 300000,
    "createdAt": 1700000000000,
}


class TestWelcomeMessage:
    def test_defaults(self):
        wm = WelcomeMessage(creator_id="c1", title="Hi", content="Welcome")
        assert wm.trigger_event == TriggerEvent.SUBSCRIPTION
        assert wm.is_active is True
        assert wm.tier_id is None
        assert wm.sent_count == 0
        assert wm.delay_minutes == 0
        assert len(wm.id) == 32

    def test_delay_ms(self):
        wm = WelcomeMessage(creator_id="c1", title="Hi", content="W", delay_minutes=5)
        assert wm.delay_ms == 300_000

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            WelcomeMessage(creator_id="c1", title="Hi", content="W", delay_minutes=-1)

    def test_trigger_event_from_string(self):
        wm = WelcomeMessage(creator_id="c1", title="Hi", content="W", trigger_event="FOLLOW")
        assert wm.trigger_event is TriggerEvent.FOLLOW


class TestFormatWelcomeContent:
    def test_subject_bolded(self):
        assert format_welcome_content("Hi", "Welcome") == "**Hi**\n\nWelcome"

    def test_test_prefix(self):
        assert format_welcome_content("Hi", "Welcome", test=True) == "[TEST] **Hi**\n\nWelcome"

    def test_message_type_values(self):
        assert [t.value for t in MessageType] == ["TEXT", "IMAGE", "FILE"]


class TestWelcomeJobParse:
    def test_parse_camel_case(self):
        job = WelcomeJob.parse(json.dumps(WIRE_JOB))
        assert job.type == WELCOME_JOB_TYPE
        assert job.payload.subscriber_id == "fan_42"
        assert job.payload.welcome_message_id == "wm_001"
        assert job.delay_ms == 300000
        assert job.created_at == 1700000000000

    def test_parse_bytes(self):
        job = WelcomeJob.parse(json.dumps(WIRE_JOB).encode())
        assert job.payload.creator_id == "creator_1"

    def test_missing_optional_fields_defaulted(self):
        job = WelcomeJob.parse(json.dumps(WIRE_JOB))
        assert job.attempt == 0
        assert job.max_attempts == 3
        assert job.job_id.startswith("job_")

    def test_due_at(self):
        job = WelcomeJob.parse(json.dumps(WIRE_JOB))
        assert job.due_at == 1700000000000 + 300000

    def test_invalid_json(self):
        with pytest.raises(MalformedJobError):
            WelcomeJob.parse("{not json")

    def test_non_object(self):
        with pytest.raises(MalformedJobError):
            WelcomeJob.parse("[1, 2, 3]")

    def test_wrong_type(self):
        bad = dict(WIRE_JOB, type="password-reset")
        with pytest.raises(MalformedJobError):
            WelcomeJob.parse(json.dumps(bad))

    def test_missing_payload_field(self):
        bad = json.loads(json.dumps(WIRE_JOB))
        del bad["payload"]["welcomeMessageId"]
        with pytest.raises(MalformedJobError):
            WelcomeJob.parse(json.dumps(bad))

    def test_negative_delay(self):
        bad = dict(WIRE_JOB, delayMs=-5)
        with pytest.raises(MalformedJobError):
            WelcomeJob.parse(json.dumps(bad))

    def test_malformed_is_value_error(self):
        assert issubclass(MalformedJobError, ValueError)


class TestWelcomeJobWire:
    def test_to_wire_uses_aliases(self):
        job = WelcomeJob(
            payload=WelcomePayload(
                subscriber_id="fan_1", creator_id="c1", subject="S",
                content="C", welcome_message_id="wm_9",
            ),
            delay_ms=1000,
            created_at=5,
        )
        wire = job.to_wire()
        assert wire["delayMs"] == 1000
        assert wire["createdAt"] == 5
        assert wire["maxAttempts"] == 3
        assert wire["payload"]["subscriberId"] == "fan_1"
        assert wire["payload"]["welcomeMessageId"] == "wm_9"
        assert "delay_ms" not in wire

    def test_next_attempt_keeps_identity(self):
        job = WelcomeJob.parse(json.dumps(WIRE_JOB))
        retry = job.next_attempt()
        assert retry.attempt == 1
        assert retry.job_id == job.job_id
        assert retry.created_at == job.created_at
        assert job.attempt == 0
