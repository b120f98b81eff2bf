"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

The welcome worker needs two writes: "create message" and "increment
sent_count on an existing welcome message". deliver_welcome() performs
both; the SQL backend runs them in one transaction.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Message, MessageType, WelcomeMessage


class WelcomeMessageNotFound(LookupError):
    """No welcome message with the given id."""


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Welcome messages ──────────────────────────────────────

    @abstractmethod
    async def create_welcome_message(self, welcome: WelcomeMessage) -> WelcomeMessage:
        ...

    @abstractmethod
    async def get_welcome_message(self, welcome_id: str) -> Optional[WelcomeMessage]:
        ...

    @abstractmethod
    async def list_welcome_messages(self, creator_id: str) -> list[WelcomeMessage]:
        """All of a creator's welcome messages, newest first."""
        ...

    @abstractmethod
    async def find_active_welcome_messages(
        self, creator_id: str, trigger_event: str, tier_id: Optional[str] = None,
    ) -> list[WelcomeMessage]:
        """Active configs for the event whose tier is unset or equals tier_id."""
        ...

    @abstractmethod
    async def update_welcome_message(self, welcome_id: str, **fields: Any) -> Optional[WelcomeMessage]:
        ...

    @abstractmethod
    async def delete_welcome_message(self, welcome_id: str) -> bool:
        ...

    @abstractmethod
    async def increment_sent_count(self, welcome_id: str) -> int:
        """Add one to sent_count and return the new value."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create_message(self, sender_id: str, receiver_id: str, content: str,
                             type: MessageType = MessageType.TEXT) -> Message:
        ...

    @abstractmethod
    async def list_messages(self, receiver_id: str, limit: int = 50) -> list[Message]:
        ...

    # ── Welcome delivery ──────────────────────────────────────

    @abstractmethod
    async def deliver_welcome(self, sender_id: str, receiver_id: str, content: str,
                              welcome_id: str) -> Message:
        """Create the direct message and bump the welcome message's sent_count."""
        ...
