"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - String primary keys (uuid hex) — no database-specific sequences.
  - Timezone-aware DateTime columns everywhere.
  - Users, tiers and subscriptions live in the wider platform schema;
    only the columns the welcome pipeline touches are modelled here.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Welcome Messages
# ──────────────────────────────────────────────────────────────

class WelcomeMessageRow(Base):
    __tablename__ = "welcome_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tier_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    trigger_event: Mapped[str] = mapped_column(String(50), nullable=False, default="SUBSCRIPTION")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    delay_minutes: Mapped[int] = mapped_column(Integer, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_welcome_messages_creator_id", "creator_id"),
        Index("idx_welcome_messages_trigger_event", "trigger_event"),
        Index("idx_welcome_messages_is_active", "is_active"),
        Index("idx_welcome_messages_created_at", "created_at"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "creator_id": self.creator_id, "tier_id": self.tier_id,
            "title": self.title, "content": self.content,
            "trigger_event": self.trigger_event, "is_active": self.is_active,
            "delay_minutes": self.delay_minutes, "sent_count": self.sent_count,
            "created_at": self.created_at, "updated_at": self.updated_at,
        }


# ──────────────────────────────────────────────────────────────
#  Direct Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(16), default="TEXT")
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messages_receiver_ts", "receiver_id", "created_at"),
        Index("ix_messages_sender", "sender_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "sender_id": self.sender_id, "receiver_id": self.receiver_id,
            "content": self.content, "type": self.type, "is_read": self.is_read,
            "created_at": self.created_at,
        }
