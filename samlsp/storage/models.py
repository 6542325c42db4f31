"""SQLAlchemy 2.x ORM models for persistent SP state."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String, TypeDecorator
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware datetimes stored as UTC.

    SQLite drops tzinfo on the way back, so values are normalized on both
    sides of the round trip.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime given for a UTC column")
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        datetime: UTCDateTime,
    }


class SessionRow(Base):
    """A local session, keyed by the SHA-256 of its token."""

    __tablename__ = "sessions"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    identity: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    last_access: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<SessionRow(key='{self.key[:8]}...', expires_at={self.expires_at})>"


class ConsumedAssertion(Base):
    """An assertion ID that has already been accepted."""

    __tablename__ = "consumed_assertions"

    assertion_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ConsumedAssertion(assertion_id='{self.assertion_id}')>"


class PendingRequest(Base):
    """An AuthnRequest awaiting its Response."""

    __tablename__ = "pending_requests"

    request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    issued_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False, index=True)
    return_to: Mapped[str] = mapped_column(String(2048), nullable=False, default="/")

    def __repr__(self) -> str:
        return f"<PendingRequest(request_id='{self.request_id}')>"
