"""Local session management.

Binds an authenticated Identity to an opaque token handed to the browser.
Only the SHA-256 of a token is stored, so a leaked store does not yield
usable cookies.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from samlsp.storage.stores import SessionRecord

if TYPE_CHECKING:
    from samlsp.core.identity import Identity
    from samlsp.storage.stores import SessionStore

logger = logging.getLogger(__name__)

# Session token settings
SESSION_TOKEN_BYTES = 32  # 256-bit tokens
MAX_TOKEN_LENGTH = 128
MAX_CREATE_ATTEMPTS = 5


class SessionError(Exception):
    """Raised when a session cannot be created."""


def generate_session_token() -> str:
    """Generate a secure random session token.

    Returns:
        A 43-character URL-safe string (256 bits).
    """
    return secrets.token_urlsafe(SESSION_TOKEN_BYTES)


def hash_session_token(token: str) -> str:
    """Hash a session token for storage.

    Args:
        token: The raw session token.

    Returns:
        SHA-256 hash of the token as a hex string.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def utcnow() -> datetime:
    return datetime.now(UTC)


class SessionManager:
    """Creates, resolves and invalidates local sessions.

    Sessions have a fixed absolute lifetime unless ``sliding`` is set, in
    which case every successful resolve pushes the expiry forward.
    """

    def __init__(
        self,
        store: SessionStore,
        lifetime: timedelta = timedelta(hours=8),
        sliding: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the session manager.

        Args:
            store: Where session records are kept.
            lifetime: How long a session stays valid.
            sliding: Refresh the expiry on each resolve.
            clock: Source of the current time.
        """
        if lifetime <= timedelta(0):
            raise ValueError("Session lifetime must be positive")
        self._store = store
        self._lifetime = lifetime
        self._sliding = sliding
        self._clock = clock

    @property
    def lifetime(self) -> timedelta:
        """Session lifetime."""
        return self._lifetime

    def create(self, identity: Identity) -> str:
        """Start a session for an identity.

        Args:
            identity: The authenticated principal.

        Returns:
            The raw session token for the cookie.

        Raises:
            SessionError: If no unused token could be generated.
        """
        for _ in range(MAX_CREATE_ATTEMPTS):
            now = self._clock()
            token = generate_session_token()
            record = SessionRecord(
                key=hash_session_token(token),
                identity=identity,
                created_at=now,
                expires_at=now + self._lifetime,
                last_access=now,
            )
            if self._store.add(record, now):
                logger.info("Session created for %s", identity.display_name)
                return token
            logger.warning("Session token collision, regenerating")

        raise SessionError("Could not allocate a unique session token")

    def resolve(self, token: object) -> Identity | None:
        """Look up the identity behind a token.

        Unknown, expired and malformed tokens all yield None.
        """
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            return None

        now = self._clock()
        key = hash_session_token(token)
        record = self._store.get(key, now)
        if record is None:
            return None

        if self._sliding:
            self._store.touch(key, last_access=now, expires_at=now + self._lifetime)

        return record.identity

    def invalidate(self, token: object) -> None:
        """End a session. Unknown tokens are ignored."""
        if not isinstance(token, str) or not token or len(token) > MAX_TOKEN_LENGTH:
            return
        self._store.delete(hash_session_token(token))

    def purge_expired(self) -> int:
        """Drop every expired session."""
        return self._store.purge_expired(self._clock())
