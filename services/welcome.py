"""
Welcome Message Service — creator configuration and the welcome-job producer.

send_welcome_messages() is called after a subscription (or follow, donation,
purchase) has been committed. It is best-effort: a failed enqueue is logged
and swallowed, never surfaced to the caller, so the business write that
triggered it is never rolled back or retried.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional

from database.store_base import BaseStore, WelcomeMessageNotFound
from job_queue.message_queue import MessageQueue, Queues
from models.schemas import (
    Message, TriggerEvent, WelcomeJob, WelcomeMessage, WelcomePayload,
    format_welcome_content, now_ms,
)

logger = structlog.get_logger()


class WelcomeMessageForbidden(PermissionError):
    """The welcome message belongs to another creator."""


class WelcomeMessageInvalid(ValueError):
    """Rejected configuration input."""


def build_welcome_job(config: WelcomeMessage, subscriber_id: str, created_at: int,
                      max_attempts: int = 3) -> WelcomeJob:
    return WelcomeJob(
        payload=WelcomePayload(
            subscriber_id=subscriber_id,
            creator_id=config.creator_id,
            subject=config.title,
            content=config.content,
            welcome_message_id=config.id,
        ),
        delay_ms=config.delay_ms,
        created_at=created_at,
        max_attempts=max_attempts,
    )


class WelcomeMessageService:

    def __init__(
        self,
        store: BaseStore,
        queue: MessageQueue,
        queue_name: str = Queues.WELCOME,
        max_attempts: int = 3,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.queue = queue
        self.queue_name = queue_name
        self.max_attempts = max_attempts
        self._clock = clock

    # ── Producer ──────────────────────────────────────────

    async def send_welcome_messages(
        self,
        subscriber_id: str,
        creator_id: str,
        trigger_event: str = TriggerEvent.SUBSCRIPTION.value,
        tier_id: Optional[str] = None,
    ) -> int:
        """
        Enqueue one job per matching active welcome message.

        Returns the number of jobs published. Never raises.
        """
        try:
            configs = await self.store.find_active_welcome_messages(
                creator_id, trigger_event, tier_id,
            )
        except Exception as e:
            logger.error("welcome_lookup_failed",
                         creator_id=creator_id,
                         trigger_event=trigger_event,
                         error=str(e))
            return 0

        published = 0
        for config in configs:
            job = build_welcome_job(config, subscriber_id, self._clock(), self.max_attempts)
            if await self.queue.publish(self.queue_name, job):
                published += 1
                logger.info("welcome_job_enqueued",
                            job_id=job.job_id,
                            welcome_id=config.id,
                            subscriber_id=subscriber_id,
                            delay_ms=job.delay_ms)
            else:
                logger.warning("welcome_job_not_enqueued",
                               welcome_id=config.id,
                               subscriber_id=subscriber_id)
        return published

    # ── Configuration ─────────────────────────────────────

    async def create(self, creator_id: str, data: dict[str, Any]) -> WelcomeMessage:
        title = data.get("title") or data.get("subject")
        content = data.get("content")
        if not title or not content:
            raise WelcomeMessageInvalid("Subject and content are required")
        delay = data.get("delay_minutes") or 0
        if delay < 0:
            raise WelcomeMessageInvalid("delay_minutes must be >= 0")

        try:
            trigger = TriggerEvent(data.get("trigger_event") or TriggerEvent.SUBSCRIPTION)
        except ValueError as e:
            raise WelcomeMessageInvalid(str(e)) from e

        welcome = WelcomeMessage(
            creator_id=creator_id,
            title=title,
            content=content,
            trigger_event=trigger,
            tier_id=data.get("tier_id") or None,
            is_active=data["is_active"] if data.get("is_active") is not None else True,
            delay_minutes=delay,
        )
        created = await self.store.create_welcome_message(welcome)
        logger.info("welcome_message_created", welcome_id=created.id, creator_id=creator_id)
        return created

    async def list_for_creator(self, creator_id: str) -> list[WelcomeMessage]:
        return await self.store.list_welcome_messages(creator_id)

    async def get_for_creator(self, welcome_id: str, creator_id: str) -> WelcomeMessage:
        welcome = await self.store.get_welcome_message(welcome_id)
        if welcome is None:
            raise WelcomeMessageNotFound(welcome_id)
        if welcome.creator_id != creator_id:
            raise WelcomeMessageForbidden(welcome_id)
        return welcome

    async def update(self, welcome_id: str, creator_id: str, changes: dict[str, Any]) -> WelcomeMessage:
        await self.get_for_creator(welcome_id, creator_id)
        changes = dict(changes)
        if "subject" in changes:
            changes["title"] = changes.pop("subject")
        if "tier_id" in changes:
            changes["tier_id"] = changes["tier_id"] or None
        if changes.get("delay_minutes") is not None and changes["delay_minutes"] < 0:
            raise WelcomeMessageInvalid("delay_minutes must be >= 0")
        for key in ("title", "content"):
            if key in changes and not changes[key]:
                raise WelcomeMessageInvalid(f"{key} cannot be empty")
        changes = {k: v for k, v in changes.items() if v is not None or k == "tier_id"}

        updated = await self.store.update_welcome_message(welcome_id, **changes)
        if updated is None:
            raise WelcomeMessageNotFound(welcome_id)
        return updated

    async def delete(self, welcome_id: str, creator_id: str) -> None:
        await self.get_for_creator(welcome_id, creator_id)
        await self.store.delete_welcome_message(welcome_id)
        logger.info("welcome_message_deleted", welcome_id=welcome_id, creator_id=creator_id)

    async def send_test(self, welcome_id: str, creator_id: str, test_subscriber_id: str) -> Message:
        """Send a [TEST] copy straight away; sent_count is not touched."""
        if not test_subscriber_id:
            raise WelcomeMessageInvalid("Test subscriber ID is required")
        welcome = await self.get_for_creator(welcome_id, creator_id)
        return await self.store.create_message(
            sender_id=creator_id,
            receiver_id=test_subscriber_id,
            content=format_welcome_content(welcome.title, welcome.content, test=True),
        )
