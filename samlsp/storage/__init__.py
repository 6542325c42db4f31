"""Storage module for samlsp.

Provides the session store, replay cache and pending-request store, each
in memory or over an SQLAlchemy database.
"""

from samlsp.storage.database import (
    Database,
    DatabaseError,
    SQLReplayCache,
    SQLRequestStore,
    SQLSessionStore,
    build_stores,
    create_database_engine,
    sql_stores,
)
from samlsp.storage.models import Base, ConsumedAssertion, PendingRequest, SessionRow
from samlsp.storage.stores import (
    MemoryReplayCache,
    MemoryRequestStore,
    MemorySessionStore,
    ReplayCache,
    RequestStore,
    SessionRecord,
    SessionStore,
    Stores,
    memory_stores,
)

__all__ = [
    # Interfaces
    "ReplayCache",
    "RequestStore",
    "SessionRecord",
    "SessionStore",
    "Stores",
    # In-memory
    "MemoryReplayCache",
    "MemoryRequestStore",
    "MemorySessionStore",
    "memory_stores",
    # SQL
    "Database",
    "DatabaseError",
    "SQLReplayCache",
    "SQLRequestStore",
    "SQLSessionStore",
    "build_stores",
    "create_database_engine",
    "sql_stores",
    # Models
    "Base",
    "ConsumedAssertion",
    "PendingRequest",
    "SessionRow",
]
