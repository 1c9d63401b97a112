"""Persistence for tenants, subscriptions, events, and deliveries.

Backends:
    - InMemoryStore: dicts under an asyncio lock (single process)
    - SQLStore: SQLAlchemy 2.0 async (SQLite via aiosqlite, PostgreSQL via asyncpg)
"""

from .base import DeliveryStore
from .memory import InMemoryStore
from .retry import storage_operation, storage_retry
from .sql import SQLStore

__all__ = [
    "DeliveryStore",
    "InMemoryStore",
    "SQLStore",
    "storage_operation",
    "storage_retry",
]
