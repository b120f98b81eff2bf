"""Shared test fixtures for the Fundify welcome pipeline."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import Any

from database.store_memory import InMemoryStore
from job_queue.message_queue import InMemoryMessageQueue, Queues
from models.schemas import TriggerEvent, WelcomeJob, WelcomeMessage, WelcomePayload


T0 = 1_700_000_000_000          # fixed epoch ms used as "now" in queue tests
MINUTE_MS = 60_000


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def queue(clock) -> InMemoryMessageQueue:
    return InMemoryMessageQueue(clock=clock)


@pytest.fixture
def queue_name() -> str:
    return Queues.WELCOME


@pytest.fixture
def welcome_message() -> WelcomeMessage:
    """An active, tier-less subscription welcome with no delay."""
    return WelcomeMessage(
        id="wm_001",
        creator_id="creator_1",
        title="Thanks for subscribing!",
        content="Glad to have you here. Check the pinned post for perks.",
        trigger_event=TriggerEvent.SUBSCRIPTION,
        delay_minutes=0,
        sent_count=4,
        created_at=datetime(2024, 1, 1, 12, 0, 0),
    )


@pytest_asyncio.fixture
async def seeded_store(store, welcome_message) -> InMemoryStore:
    await store.create_welcome_message(welcome_message)
    return store


@pytest.fixture
def make_job():
    """Build a WelcomeJob; keyword overrides go to the job, payload_* to the payload."""
    def _make(**overrides: Any) -> WelcomeJob:
        payload = {
            "subscriber_id": "fan_42",
            "creator_id": "creator_1",
            "subject": "Thanks for subscribing!",
            "content": "Glad to have you here. Check the pinned post for perks.",
            "welcome_message_id": "wm_001",
        }
        for key in list(overrides):
            if key.startswith("payload_"):
                payload[key[len("payload_"):]] = overrides.pop(key)
        fields = {"created_at": T0, "delay_ms": 0}
        fields.update(overrides)
        return WelcomeJob(payload=WelcomePayload(**payload), **fields)
    return _make


@pytest.fixture
def make_welcome():
    """Build a WelcomeMessage; age_rank orders created_at (higher is newer)."""
    def _make(**overrides: Any) -> WelcomeMessage:
        fields = {
            "creator_id": "creator_1",
            "title": "Hello",
            "content": "Welcome aboard",
            "created_at": datetime(2024, 1, 1) + timedelta(seconds=overrides.pop("age_rank", 0)),
        }
        fields.update(overrides)
        return WelcomeMessage(**fields)
    return _make
