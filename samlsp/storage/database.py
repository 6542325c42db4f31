"""SQLAlchemy-backed stores.

Atomicity comes from the database: inserts rely on primary-key uniqueness
and consumption on the row count of a conditional DELETE, so several
worker processes can share one database.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import Engine, create_engine, delete, select, text, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from samlsp.core.identity import Identity
from samlsp.storage.models import Base, ConsumedAssertion, PendingRequest, SessionRow
from samlsp.storage.stores import (
    ReplayCache,
    RequestStore,
    SessionRecord,
    SessionStore,
    Stores,
    memory_stores,
)

if TYPE_CHECKING:
    from samlsp.core.config import AppConfig
    from samlsp.core.saml.sp import AuthnRequestContext

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Base exception for database errors."""


def create_database_engine(url: str, echo: bool = False) -> Engine:
    """Create an SQLAlchemy engine for the given URL.

    Args:
        url: SQLAlchemy database URL.
        echo: Whether to echo SQL statements (for debugging).

    Returns:
        Configured SQLAlchemy Engine.
    """
    parsed = make_url(url)

    if parsed.get_backend_name() == "sqlite":
        database = parsed.database
        if not database or database == ":memory:":
            # One shared connection, or every thread sees an empty database
            return create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        # Ensure parent directory exists
        Path(database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory for the given engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


class Database:
    """Database manager.

    Owns the engine and session factory shared by the SQL stores.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        """Initialize database manager.

        Args:
            url: SQLAlchemy database URL.
            echo: Whether to echo SQL statements.
        """
        self._url = url
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None
        self._echo = echo

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = create_database_engine(self._url, self._echo)
        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = create_session_factory(self.engine)
        return self._session_factory

    def get_session(self) -> Session:
        """Create a new database session."""
        return self.session_factory()

    def init_db(self) -> None:
        """Initialize database schema.

        Creates all tables defined in the models.
        """
        Base.metadata.create_all(self.engine)

    def verify_connection(self) -> bool:
        """Verify the database is reachable.

        Raises:
            DatabaseError: If the connection fails.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            return True
        except SQLAlchemyError as e:
            raise DatabaseError(f"Database connection failed: {e}") from e

    def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None


class SQLSessionStore(SessionStore):
    """Session store over the ``sessions`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def add(self, record: SessionRecord, now: datetime) -> bool:
        self.purge_expired(now)
        row = SessionRow(
            key=record.key,
            identity=record.identity.to_dict(),
            created_at=record.created_at,
            expires_at=record.expires_at,
            last_access=record.last_access,
        )
        try:
            with self._db.get_session() as session, session.begin():
                session.add(row)
        except IntegrityError:
            return False
        return True

    def get(self, key: str, now: datetime) -> SessionRecord | None:
        with self._db.get_session() as session:
            row = session.get(SessionRow, key)
            if row is None or now >= row.expires_at:
                return None
            return SessionRecord(
                key=row.key,
                identity=Identity.from_dict(row.identity),
                created_at=row.created_at,
                expires_at=row.expires_at,
                last_access=row.last_access,
            )

    def touch(self, key: str, last_access: datetime, expires_at: datetime) -> None:
        with self._db.get_session() as session, session.begin():
            session.execute(
                update(SessionRow)
                .where(SessionRow.key == key)
                .values(last_access=last_access, expires_at=expires_at)
            )

    def delete(self, key: str) -> None:
        with self._db.get_session() as session, session.begin():
            session.execute(delete(SessionRow).where(SessionRow.key == key))

    def purge_expired(self, now: datetime) -> int:
        with self._db.get_session() as session, session.begin():
            result = session.execute(delete(SessionRow).where(SessionRow.expires_at <= now))
            return result.rowcount


class SQLReplayCache(ReplayCache):
    """Replay cache over the ``consumed_assertions`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def add(self, key: str, expires_at: datetime, now: datetime) -> bool:
        self.purge_expired(now)
        try:
            with self._db.get_session() as session, session.begin():
                session.add(ConsumedAssertion(assertion_id=key, expires_at=expires_at))
        except IntegrityError:
            return False
        return True

    def purge_expired(self, now: datetime) -> int:
        with self._db.get_session() as session, session.begin():
            result = session.execute(
                delete(ConsumedAssertion).where(ConsumedAssertion.expires_at <= now)
            )
            return result.rowcount


class SQLRequestStore(RequestStore):
    """Pending request store over the ``pending_requests`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def put(self, context: AuthnRequestContext) -> None:
        self.purge_expired(context.issued_at)
        with self._db.get_session() as session, session.begin():
            session.merge(
                PendingRequest(
                    request_id=context.request_id,
                    issued_at=context.issued_at,
                    expires_at=context.expires_at,
                    return_to=context.return_to,
                )
            )

    def get(self, request_id: str, now: datetime) -> AuthnRequestContext | None:
        from samlsp.core.saml.sp import AuthnRequestContext

        with self._db.get_session() as session:
            row = session.scalars(
                select(PendingRequest).where(
                    PendingRequest.request_id == request_id,
                    PendingRequest.expires_at > now,
                )
            ).first()
            if row is None:
                return None
            return AuthnRequestContext(
                request_id=row.request_id,
                issued_at=row.issued_at,
                expires_at=row.expires_at,
                return_to=row.return_to,
            )

    def consume(self, request_id: str, now: datetime) -> bool:
        with self._db.get_session() as session, session.begin():
            result = session.execute(
                delete(PendingRequest).where(
                    PendingRequest.request_id == request_id,
                    PendingRequest.expires_at > now,
                )
            )
            return result.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        with self._db.get_session() as session, session.begin():
            result = session.execute(
                delete(PendingRequest).where(PendingRequest.expires_at <= now)
            )
            return result.rowcount


def sql_stores(database: Database) -> Stores:
    """Build the three stores over one database."""
    database.init_db()
    return Stores(
        sessions=SQLSessionStore(database),
        replay=SQLReplayCache(database),
        requests=SQLRequestStore(database),
    )


def build_stores(config: AppConfig) -> Stores:
    """Build the stores selected by the storage settings.

    An empty storage URL selects the in-memory stores.
    """
    if not config.storage.url:
        logger.info("Using in-memory stores")
        return memory_stores()

    database = Database(config.storage.url, echo=config.storage.echo)
    logger.info("Using SQL stores at %s", make_url(config.storage.url).render_as_string(hide_password=True))
    return sql_stores(database)
