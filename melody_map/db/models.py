"""
Database models for the Melody Map token service.

This module defines SQLAlchemy models for:
- Users (owned by the account service, referenced here only by id)
- Platform connections: one OAuth credential set per (user, platform)

Security: access and refresh tokens are encrypted at rest using Fernet encryption.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    String,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column normalized to UTC.

    PostgreSQL returns aware values for timestamptz; SQLite returns naive ones.
    Values are stored as UTC and always come back aware.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Platform(str, enum.Enum):
    """Streaming platforms a user can link."""

    SPOTIFY = "spotify"
    DEEZER = "deezer"
    APPLE_MUSIC = "apple_music"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class User(Base):
    """
    Minimal user record.

    Profiles, credentials and avatars live with the account service; the token
    service only needs the identity that connections hang off.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique user identifier"
    )

    email: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, doc="User's email address"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    platform_connections: Mapped[list["PlatformConnection"]] = relationship(
        "PlatformConnection",
        back_populates="user",
        cascade="all, delete-orphan",
        doc="All streaming-platform connections for this user",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class PlatformConnection(Base):
    """
    OAuth connection between a user and one streaming platform.

    Attributes:
        id: Unique connection identifier
        user_id: Foreign key to User
        platform: Platform tag (spotify, deezer, ...), selects the refresh protocol
        external_id: Account id on the remote platform (informational)
        access_token_ciphertext: Encrypted bearer token
        refresh_token_ciphertext: Encrypted refresh token (NULL for platforms without refresh)
        token_expires_at: Access token expiry; far-future for non-expiring platforms
        is_active: False until the user re-links the account
        created_at / updated_at: Timestamps, updated_at bumped on refresh and deactivation
    """

    __tablename__ = "platform_connections"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4, doc="Unique connection identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        doc="Foreign key to User table",
    )

    platform: Mapped[str] = mapped_column(
        String(32), nullable=False, doc="Streaming platform tag"
    )

    external_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, doc="Account identifier on the platform"
    )

    access_token_ciphertext: Mapped[bytes] = mapped_column(
        LargeBinary, nullable=False, doc="Encrypted access token (Fernet encrypted)"
    )

    refresh_token_ciphertext: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary,
        nullable=True,
        doc="Encrypted refresh token (Fernet encrypted, if the platform issues one)",
    )

    token_expires_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, doc="Access token expiration timestamp"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        doc="Whether the connection may be used for authenticated calls",
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, doc="Connection creation timestamp"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        doc="Last modification timestamp",
    )

    user: Mapped["User"] = relationship(
        "User", back_populates="platform_connections", doc="User who owns this connection"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_pc_user_platform"),
        Index("ix_pc_user_id", "user_id"),
        # Sweep query: active connections ordered by expiry
        Index("ix_pc_active_expiry", "is_active", "token_expires_at"),
    )

    @property
    def has_refresh_token(self) -> bool:
        return self.refresh_token_ciphertext is not None

    def is_expiring_within(self, buffer_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the access token expires within ``buffer_seconds`` of now."""
        now = now or utcnow()
        return (self.token_expires_at - now).total_seconds() <= buffer_seconds

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return max(0, int((self.token_expires_at - now).total_seconds()))

    def __repr__(self) -> str:
        status = "active" if self.is_active else "inactive"
        return (
            f"<PlatformConnection(id={self.id}, user_id={self.user_id}, "
            f"platform={self.platform}, status={status})>"
        )
