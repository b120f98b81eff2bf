"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

The sent_count bump is a single UPDATE ... SET sent_count = sent_count + 1
so concurrent workers never lose increments.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from sqlalchemy import select, update, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import MessageRow, WelcomeMessageRow
from database.session import get_session, session_scope
from database.store_base import BaseStore, WelcomeMessageNotFound
from models.schemas import Message, MessageType, TriggerEvent, WelcomeMessage

logger = structlog.get_logger()

_UPDATABLE = {"title", "content", "trigger_event", "tier_id", "is_active", "delay_minutes"}


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Uses the global engine unless a session factory is injected.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    def _session(self):
        if self._session_factory is not None:
            return session_scope(self._session_factory)
        return get_session()

    # ── Welcome messages ───────────────────────────────────

    async def create_welcome_message(self, welcome: WelcomeMessage) -> WelcomeMessage:
        async with self._session() as db:
            row = WelcomeMessageRow(
                id=welcome.id,
                creator_id=welcome.creator_id,
                tier_id=welcome.tier_id,
                title=welcome.title,
                content=welcome.content,
                trigger_event=welcome.trigger_event.value,
                is_active=welcome.is_active,
                delay_minutes=welcome.delay_minutes,
                sent_count=welcome.sent_count,
            )
            db.add(row)
            await db.flush()
            return self._row_to_welcome(row)

    async def get_welcome_message(self, welcome_id: str) -> Optional[WelcomeMessage]:
        async with self._session() as db:
            row = await db.get(WelcomeMessageRow, welcome_id)
            return self._row_to_welcome(row) if row else None

    async def list_welcome_messages(self, creator_id: str) -> list[WelcomeMessage]:
        async with self._session() as db:
            stmt = (
                select(WelcomeMessageRow)
                .where(WelcomeMessageRow.creator_id == creator_id)
                .order_by(WelcomeMessageRow.created_at.desc())
            )
            result = await db.execute(stmt)
            return [self._row_to_welcome(r) for r in result.scalars()]

    async def find_active_welcome_messages(
        self, creator_id: str, trigger_event: str, tier_id: Optional[str] = None,
    ) -> list[WelcomeMessage]:
        tier_clause = WelcomeMessageRow.tier_id.is_(None)
        if tier_id:
            tier_clause = or_(tier_clause, WelcomeMessageRow.tier_id == tier_id)
        async with self._session() as db:
            stmt = (
                select(WelcomeMessageRow)
                .where(
                    WelcomeMessageRow.creator_id == creator_id,
                    WelcomeMessageRow.trigger_event == TriggerEvent(trigger_event).value,
                    WelcomeMessageRow.is_active.is_(True),
                    tier_clause,
                )
                .order_by(WelcomeMessageRow.created_at.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_welcome(r) for r in result.scalars()]

    async def update_welcome_message(self, welcome_id: str, **fields: Any) -> Optional[WelcomeMessage]:
        async with self._session() as db:
            row = await db.get(WelcomeMessageRow, welcome_id)
            if not row:
                return None
            for key, value in fields.items():
                if key not in _UPDATABLE:
                    continue
                if isinstance(value, TriggerEvent):
                    value = value.value
                setattr(row, key, value)
            await db.flush()
            await db.refresh(row)
            return self._row_to_welcome(row)

    async def delete_welcome_message(self, welcome_id: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                delete(WelcomeMessageRow).where(WelcomeMessageRow.id == welcome_id)
            )
            return result.rowcount > 0

    async def increment_sent_count(self, welcome_id: str) -> int:
        async with self._session() as db:
            return await self._increment(db, welcome_id)

    # ── Messages ───────────────────────────────────────────

    async def create_message(self, sender_id: str, receiver_id: str, content: str,
                             type: MessageType = MessageType.TEXT) -> Message:
        async with self._session() as db:
            row = self._new_message_row(sender_id, receiver_id, content, type)
            db.add(row)
            await db.flush()
            return self._row_to_message(row)

    async def list_messages(self, receiver_id: str, limit: int = 50) -> list[Message]:
        async with self._session() as db:
            stmt = (
                select(MessageRow)
                .where(MessageRow.receiver_id == receiver_id)
                .order_by(MessageRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    # ── Welcome delivery ───────────────────────────────────

    async def deliver_welcome(self, sender_id: str, receiver_id: str, content: str,
                              welcome_id: str) -> Message:
        async with self._session() as db:
            row = self._new_message_row(sender_id, receiver_id, content, MessageType.TEXT)
            db.add(row)
            await db.flush()
            sent_count = await self._increment(db, welcome_id)
            logger.debug("welcome_delivered",
                         message_id=row.id,
                         welcome_id=welcome_id,
                         sent_count=sent_count)
            return self._row_to_message(row)

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    async def _increment(db: AsyncSession, welcome_id: str) -> int:
        result = await db.execute(
            update(WelcomeMessageRow)
            .where(WelcomeMessageRow.id == welcome_id)
            .values(sent_count=WelcomeMessageRow.sent_count + 1)
        )
        if result.rowcount == 0:
            raise WelcomeMessageNotFound(welcome_id)
        count = await db.execute(
            select(WelcomeMessageRow.sent_count).where(WelcomeMessageRow.id == welcome_id)
        )
        return count.scalar_one()

    @staticmethod
    def _new_message_row(sender_id: str, receiver_id: str, content: str,
                         type: MessageType) -> MessageRow:
        return MessageRow(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            type=MessageType(type).value,
            is_read=False,
        )

    @staticmethod
    def _row_to_welcome(row: WelcomeMessageRow) -> WelcomeMessage:
        return WelcomeMessage(
            id=row.id,
            creator_id=row.creator_id,
            tier_id=row.tier_id,
            title=row.title,
            content=row.content,
            trigger_event=TriggerEvent(row.trigger_event),
            is_active=row.is_active,
            delay_minutes=row.delay_minutes,
            sent_count=row.sent_count,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_message(row: MessageRow) -> Message:
        return Message(
            id=row.id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=row.content,
            type=MessageType(row.type),
            is_read=row.is_read,
            created_at=row.created_at,
        )
