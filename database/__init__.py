"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  configs = await store.find_active_welcome_messages("creator-1", "SUBSCRIPTION")
"""
from database.models import Base, MessageRow, WelcomeMessageRow
from database.session import (
    close_db, create_session_factory, get_engine, get_session, init_db, make_engine,
)
from database.store_base import BaseStore, WelcomeMessageNotFound
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "MessageRow", "WelcomeMessageRow",
    # Session management
    "make_engine", "create_session_factory",
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStore", "WelcomeMessageNotFound",
    # Store backends
    "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
