"""Tests for the welcome message service: configuration CRUD and the job producer."""
import json
import pytest
from unittest.mock import AsyncMock

from database.store_base import WelcomeMessageNotFound
from job_queue.message_queue import RedisMessageQueue
from models.schemas import TriggerEvent, WelcomeJob
from services.welcome import (
    WelcomeMessageForbidden, WelcomeMessageInvalid, WelcomeMessageService, build_welcome_job,
)


@pytest.fixture
def service(store, queue, clock, queue_name):
    return WelcomeMessageService(store, queue, queue_name=queue_name, clock=clock)


# ──────────────────────────────────────────────────────────────
#  Producer
# ──────────────────────────────────────────────────────────────

class TestBuildWelcomeJob:
    def test_fields_from_config(self, welcome_message):
        welcome_message.delay_minutes = 15
        job = build_welcome_job(welcome_message, "fan_7", created_at=123, max_attempts=4)
        assert job.payload.subscriber_id == "fan_7"
        assert job.payload.creator_id == "creator_1"
        assert job.payload.subject == welcome_message.title
        assert job.payload.welcome_message_id == "wm_001"
        assert job.delay_ms == 15 * 60_000
        assert job.created_at == 123
        assert job.max_attempts == 4


class TestSendWelcomeMessages:
    @pytest.mark.asyncio
    async def test_one_job_per_matching_config(self, service, store, queue, queue_name, make_welcome, clock):
        await store.create_welcome_message(make_welcome(title="all tiers"))
        await store.create_welcome_message(make_welcome(title="gold", tier_id="gold", delay_minutes=5))
        await store.create_welcome_message(make_welcome(title="silver", tier_id="silver"))

        n = await service.send_welcome_messages("fan_1", "creator_1", "SUBSCRIPTION", tier_id="gold")
        assert n == 2
        jobs = [WelcomeJob.parse(b) for b in await queue.peek(queue_name)]
        assert {j.payload.subject for j in jobs} == {"all tiers", "gold"}
        assert all(j.created_at == clock() for j in jobs)
        assert {j.delay_ms for j in jobs} == {0, 5 * 60_000}

    @pytest.mark.asyncio
    async def test_no_configs(self, service, queue, queue_name):
        assert await service.send_welcome_messages("fan_1", "creator_1") == 0
        assert await queue.queue_length(queue_name) == 0

    @pytest.mark.asyncio
    async def test_wire_format_is_camel_case(self, service, store, queue, queue_name, make_welcome):
        await store.create_welcome_message(make_welcome())
        await service.send_welcome_messages("fan_1", "creator_1")
        [body] = await queue.peek(queue_name)
        data = json.loads(body)
        assert data["type"] == "welcome-message"
        assert set(data["payload"]) == {
            "subscriberId", "creatorId", "subject", "content", "welcomeMessageId",
        }
        assert "delayMs" in data and "createdAt" in data

    @pytest.mark.asyncio
    async def test_unavailable_queue_does_not_raise(self, store, make_welcome):
        await store.create_welcome_message(make_welcome())
        service = WelcomeMessageService(store, RedisMessageQueue(redis_url=""))
        assert await service.send_welcome_messages("fan_1", "creator_1") == 0

    @pytest.mark.asyncio
    async def test_store_failure_does_not_raise(self, queue):
        store = AsyncMock()
        store.find_active_welcome_messages.side_effect = RuntimeError("db down")
        service = WelcomeMessageService(store, queue)
        assert await service.send_welcome_messages("fan_1", "creator_1") == 0


# ──────────────────────────────────────────────────────────────
#  Configuration
# ──────────────────────────────────────────────────────────────

class TestWelcomeConfiguration:
    @pytest.mark.asyncio
    async def test_create_with_subject(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "Welcome", "delay_minutes": 3})
        assert wm.title == "Hi"
        assert wm.delay_minutes == 3
        assert wm.trigger_event == TriggerEvent.SUBSCRIPTION
        assert wm.is_active is True

    @pytest.mark.asyncio
    async def test_create_requires_subject_and_content(self, service):
        with pytest.raises(WelcomeMessageInvalid):
            await service.create("creator_1", {"subject": "Hi"})
        with pytest.raises(WelcomeMessageInvalid):
            await service.create("creator_1", {"content": "Welcome"})

    @pytest.mark.asyncio
    async def test_create_rejects_negative_delay(self, service):
        with pytest.raises(WelcomeMessageInvalid):
            await service.create("creator_1", {"subject": "Hi", "content": "W", "delay_minutes": -1})

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_trigger(self, service):
        with pytest.raises(WelcomeMessageInvalid):
            await service.create("creator_1", {"subject": "Hi", "content": "W", "trigger_event": "BIRTHDAY"})

    @pytest.mark.asyncio
    async def test_create_inactive(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W", "is_active": False})
        assert wm.is_active is False

    @pytest.mark.asyncio
    async def test_get_other_creator_forbidden(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W"})
        with pytest.raises(WelcomeMessageForbidden):
            await service.get_for_creator(wm.id, "creator_2")

    @pytest.mark.asyncio
    async def test_get_missing(self, service):
        with pytest.raises(WelcomeMessageNotFound):
            await service.get_for_creator("nope", "creator_1")

    @pytest.mark.asyncio
    async def test_update_maps_subject(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W", "tier_id": "gold"})
        updated = await service.update(wm.id, "creator_1", {"subject": "Hello", "tier_id": ""})
        assert updated.title == "Hello"
        assert updated.tier_id is None

    @pytest.mark.asyncio
    async def test_update_rejects_empty_content(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W"})
        with pytest.raises(WelcomeMessageInvalid):
            await service.update(wm.id, "creator_1", {"content": ""})

    @pytest.mark.asyncio
    async def test_update_other_creator_forbidden(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W"})
        with pytest.raises(WelcomeMessageForbidden):
            await service.update(wm.id, "creator_2", {"subject": "Mine now"})

    @pytest.mark.asyncio
    async def test_delete(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W"})
        await service.delete(wm.id, "creator_1")
        assert await service.list_for_creator("creator_1") == []

    @pytest.mark.asyncio
    async def test_send_test_prefixed_and_not_counted(self, service, store):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W"})
        msg = await service.send_test(wm.id, "creator_1", "tester_1")
        assert msg.content == "[TEST] **Hi**\n\nW"
        assert msg.receiver_id == "tester_1"
        assert (await store.get_welcome_message(wm.id)).sent_count == 0

    @pytest.mark.asyncio
    async def test_send_test_requires_subscriber(self, service):
        wm = await service.create("creator_1", {"subject": "Hi", "content": "W"})
        with pytest.raises(WelcomeMessageInvalid):
            await service.send_test(wm.id, "creator_1", "")
