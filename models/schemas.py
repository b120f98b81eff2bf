"""
Core data models for the Fundify welcome pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import json
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


WELCOME_JOB_TYPE = "welcome-message"


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TriggerEvent(str, Enum):
    SUBSCRIPTION = "SUBSCRIPTION"
    DONATION = "DONATION"
    FOLLOW = "FOLLOW"
    PURCHASE = "PURCHASE"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"


# ──────────────────────────────────────────────────────────────
#  Welcome Message — creator-side configuration
# ──────────────────────────────────────────────────────────────

class WelcomeMessage(BaseModel):
    """A creator's welcome message, sent to fans on a trigger event."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    creator_id: str
    title: str                                # rendered as the message subject
    content: str
    trigger_event: TriggerEvent = TriggerEvent.SUBSCRIPTION
    tier_id: Optional[str] = None             # None → applies to every tier
    is_active: bool = True
    delay_minutes: int = Field(default=0, ge=0)
    sent_count: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def delay_ms(self) -> int:
        return self.delay_minutes * 60_000


class Message(BaseModel):
    """A direct message between two users."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender_id: str
    receiver_id: str
    content: str
    type: MessageType = MessageType.TEXT
    is_read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)


def format_welcome_content(subject: str, content: str, test: bool = False) -> str:
    body = f"**{subject}**\n\n{content}"
    return f"[TEST] {body}" if test else body


# ──────────────────────────────────────────────────────────────
#  Welcome Job — queue message body
# ──────────────────────────────────────────────────────────────

class MalformedJobError(ValueError):
    """Raised when a queue message body cannot be parsed as a WelcomeJob."""


class WelcomePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscriber_id: str = Field(alias="subscriberId")
    creator_id: str = Field(alias="creatorId")
    subject: str
    content: str
    welcome_message_id: str = Field(alias="welcomeMessageId")


class WelcomeJob(BaseModel):
    """
    Serialized as camelCase JSON on the wire:

        {"type": "welcome-message",
         "payload": {"subscriberId", "creatorId", "subject", "content", "welcomeMessageId"},
         "delayMs": 0, "createdAt": 1700000000000,
         "jobId": "...", "attempt": 0, "maxAttempts": 3}

    delay_ms counts from created_at, not from dequeue time.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["welcome-message"] = WELCOME_JOB_TYPE
    payload: WelcomePayload
    delay_ms: int = Field(default=0, ge=0, alias="delayMs")
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    job_id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}", alias="jobId")
    attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1, alias="maxAttempts")

    @property
    def due_at(self) -> int:
        """Epoch ms before which the side effect must not run."""
        return self.created_at + self.delay_ms

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def parse(cls, body: str | bytes) -> WelcomeJob:
        """Parse a raw queue body; any defect raises MalformedJobError."""
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise MalformedJobError(f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedJobError("job body is not an object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise MalformedJobError(str(e)) from e

    def next_attempt(self) -> WelcomeJob:
        """Copy for a retry; keeps job_id for tracing."""
        return self.model_copy(update={"attempt": self.attempt + 1})
