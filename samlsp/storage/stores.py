"""Stores for sessions, pending AuthnRequests and consumed assertion IDs.

Each store has an abstract interface and an in-memory implementation.
Every mutating operation is atomic: for a given key, at most one caller
can win an ``add`` or ``consume``. Expired entries are ignored on read and
purged opportunistically on write.

The ``now`` arguments are supplied by the callers, which own the clock.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from samlsp.core.identity import Identity
    from samlsp.core.saml.sp import AuthnRequestContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    """A live local session.

    ``key`` is the SHA-256 of the session token; raw tokens are never stored.
    """

    key: str
    identity: Identity
    created_at: datetime
    expires_at: datetime
    last_access: datetime

    def is_expired(self, now: datetime) -> bool:
        """Check whether the session has lapsed."""
        return now >= self.expires_at


class SessionStore(ABC):
    """Session records keyed by token digest."""

    @abstractmethod
    def add(self, record: SessionRecord, now: datetime) -> bool:
        """Insert a record. Returns False if the key is already taken."""

    @abstractmethod
    def get(self, key: str, now: datetime) -> SessionRecord | None:
        """Return the live record for key, or None."""

    @abstractmethod
    def touch(self, key: str, last_access: datetime, expires_at: datetime) -> None:
        """Refresh the access time and expiry of a record."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a record. Missing keys are ignored."""

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Drop expired records, returning how many were removed."""


class ReplayCache(ABC):
    """Assertion IDs that have already been accepted."""

    @abstractmethod
    def add(self, key: str, expires_at: datetime, now: datetime) -> bool:
        """Record key until expires_at.

        Returns:
            True if the key was new, False if it is already recorded.
        """

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Drop entries past their expiry, returning how many were removed."""


class RequestStore(ABC):
    """Outstanding AuthnRequest contexts keyed by request ID."""

    @abstractmethod
    def put(self, context: AuthnRequestContext) -> None:
        """Record an outbound request."""

    @abstractmethod
    def get(self, request_id: str, now: datetime) -> AuthnRequestContext | None:
        """Return the live context for request_id, or None."""

    @abstractmethod
    def consume(self, request_id: str, now: datetime) -> bool:
        """Remove a live context.

        Returns:
            True for exactly one caller per request ID; False if the context
            was already consumed or has expired.
        """

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Drop expired contexts, returning how many were removed."""


@dataclass
class Stores:
    """The three stores the service provider depends on."""

    sessions: SessionStore
    replay: ReplayCache
    requests: RequestStore

    def purge_expired(self, now: datetime) -> int:
        """Sweep all stores."""
        return (
            self.sessions.purge_expired(now)
            + self.replay.purge_expired(now)
            + self.requests.purge_expired(now)
        )


class MemorySessionStore(SessionStore):
    """In-process session store guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, SessionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def add(self, record: SessionRecord, now: datetime) -> bool:
        with self._lock:
            self._purge(now)
            if record.key in self._records:
                return False
            self._records[record.key] = record
            return True

    def get(self, key: str, now: datetime) -> SessionRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if record.is_expired(now):
                del self._records[key]
                return None
            return record

    def touch(self, key: str, last_access: datetime, expires_at: datetime) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                self._records[key] = replace(
                    record, last_access=last_access, expires_at=expires_at
                )

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            return self._purge(now)

    def _purge(self, now: datetime) -> int:
        expired = [key for key, record in self._records.items() if record.is_expired(now)]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("Purged %d expired sessions", len(expired))
        return len(expired)


class MemoryReplayCache(ReplayCache):
    """In-process replay cache guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, datetime] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def add(self, key: str, expires_at: datetime, now: datetime) -> bool:
        with self._lock:
            self._purge(now)
            if key in self._entries:
                return False
            self._entries[key] = expires_at
            return True

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            return self._purge(now)

    def _purge(self, now: datetime) -> int:
        expired = [key for key, expires_at in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)


class MemoryRequestStore(RequestStore):
    """In-process pending request store guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contexts: dict[str, AuthnRequestContext] = {}

    def __len__(self) -> int:
        return len(self._contexts)

    def put(self, context: AuthnRequestContext) -> None:
        with self._lock:
            self._purge(context.issued_at)
            self._contexts[context.request_id] = context

    def get(self, request_id: str, now: datetime) -> AuthnRequestContext | None:
        with self._lock:
            context = self._contexts.get(request_id)
            if context is None or context.is_expired(now):
                return None
            return context

    def consume(self, request_id: str, now: datetime) -> bool:
        with self._lock:
            context = self._contexts.pop(request_id, None)
            return context is not None and not context.is_expired(now)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            return self._purge(now)

    def _purge(self, now: datetime) -> int:
        expired = [rid for rid, context in self._contexts.items() if context.is_expired(now)]
        for rid in expired:
            del self._contexts[rid]
        return len(expired)


def memory_stores() -> Stores:
    """Build a fresh set of in-memory stores."""
    return Stores(
        sessions=MemorySessionStore(),
        replay=MemoryReplayCache(),
        requests=MemoryRequestStore(),
    )
