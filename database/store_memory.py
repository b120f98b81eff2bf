"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import BaseStore, WelcomeMessageNotFound
from models.schemas import Message, MessageType, TriggerEvent, WelcomeMessage

logger = structlog.get_logger()

_UPDATABLE = {"title", "content", "trigger_event", "tier_id", "is_active", "delay_minutes"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore(BaseStore):
    """Same interface as SqlStore; returns model copies, never live references."""

    def __init__(self):
        self._welcome: dict[str, WelcomeMessage] = {}
        self._messages: list[Message] = []
        logger.info("inmemory_store_initialized")

    # ── Welcome messages ──────────────────────────────────

    async def create_welcome_message(self, welcome: WelcomeMessage) -> WelcomeMessage:
        self._welcome[welcome.id] = welcome.model_copy()
        return welcome.model_copy()

    async def get_welcome_message(self, welcome_id: str) -> Optional[WelcomeMessage]:
        wm = self._welcome.get(welcome_id)
        return wm.model_copy() if wm else None

    async def list_welcome_messages(self, creator_id: str) -> list[WelcomeMessage]:
        rows = [wm for wm in self._welcome.values() if wm.creator_id == creator_id]
        rows.sort(key=lambda wm: wm.created_at, reverse=True)
        return [wm.model_copy() for wm in rows]

    async def find_active_welcome_messages(
        self, creator_id: str, trigger_event: str, tier_id: Optional[str] = None,
    ) -> list[WelcomeMessage]:
        event = TriggerEvent(trigger_event)
        rows = [
            wm for wm in self._welcome.values()
            if wm.creator_id == creator_id
            and wm.trigger_event == event
            and wm.is_active
            and (wm.tier_id is None or (tier_id is not None and wm.tier_id == tier_id))
        ]
        rows.sort(key=lambda wm: wm.created_at)
        return [wm.model_copy() for wm in rows]

    async def update_welcome_message(self, welcome_id: str, **fields: Any) -> Optional[WelcomeMessage]:
        wm = self._welcome.get(welcome_id)
        if not wm:
            return None
        changes = {k: v for k, v in fields.items() if k in _UPDATABLE}
        if "trigger_event" in changes:
            changes["trigger_event"] = TriggerEvent(changes["trigger_event"])
        changes["updated_at"] = _utcnow()
        updated = wm.model_copy(update=changes)
        self._welcome[welcome_id] = updated
        return updated.model_copy()

    async def delete_welcome_message(self, welcome_id: str) -> bool:
        return self._welcome.pop(welcome_id, None) is not None

    async def increment_sent_count(self, welcome_id: str) -> int:
        wm = self._welcome.get(welcome_id)
        if not wm:
            raise WelcomeMessageNotFound(welcome_id)
        wm.sent_count += 1
        return wm.sent_count

    # ── Messages ──────────────────────────────────────────

    async def create_message(self, sender_id: str, receiver_id: str, content: str,
                             type: MessageType = MessageType.TEXT) -> Message:
        msg = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            type=MessageType(type),
        )
        self._messages.append(msg)
        return msg.model_copy()

    async def list_messages(self, receiver_id: str, limit: int = 50) -> list[Message]:
        rows = [m for m in self._messages if m.receiver_id == receiver_id]
        return [m.model_copy() for m in reversed(rows)][:limit]

    # ── Welcome delivery ──────────────────────────────────

    async def deliver_welcome(self, sender_id: str, receiver_id: str, content: str,
                              welcome_id: str) -> Message:
        # Check first so a missing config leaves no orphan message behind
        if welcome_id not in self._welcome:
            raise WelcomeMessageNotFound(welcome_id)
        msg = await self.create_message(sender_id, receiver_id, content)
        await self.increment_sent_count(welcome_id)
        return msg
