"""
Repository layer for platform connection storage.

PlatformConnectionsRepository encapsulates every query the token lifecycle
needs and hides token encryption: callers pass and receive plaintext tokens,
rows only ever hold Fernet ciphertext.

Repositories flush but never commit; the caller owns the unit of work.
"""

import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..utils.crypto import CryptoService, CryptoServiceError
from .models import PlatformConnection, utcnow


class RepositoryError(Exception):
    """Base exception for repository operations."""

    pass


class ConnectionNotFoundError(RepositoryError):
    """Raised when a connection is not found."""

    pass


class PlatformConnectionsRepository:
    """
    Repository for PlatformConnection entity operations.

    Handles:
    - Lookup by id and by (user, platform)
    - Insert and reactivating upsert on OAuth callback
    - Partial updates after refresh
    - Bulk queries for the background sweep
    - Deactivation (single and bulk)
    """

    def __init__(self, session: AsyncSession, crypto: CryptoService):
        """
        Args:
            session: Async SQLAlchemy session for database operations
            crypto: Crypto service used for token encryption/decryption
        """
        self.session = session
        self.crypto = crypto

    # ===== Lookups =====

    async def find_connection(
        self, user_id: uuid.UUID, platform: str, active_only: bool = False
    ) -> Optional[PlatformConnection]:
        """Get the connection for a (user, platform) pair, if any."""
        stmt = select(PlatformConnection).where(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform,
        )
        if active_only:
            stmt = stmt.where(PlatformConnection.is_active.is_(True))

        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting connection: {e}") from e

    async def find_connection_by_id(
        self, connection_id: uuid.UUID
    ) -> Optional[PlatformConnection]:
        """Get connection by ID."""
        try:
            result = await self.session.execute(
                select(PlatformConnection).where(PlatformConnection.id == connection_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Database error getting connection: {e}") from e

    async def list_active_connections(
        self, user_id: uuid.UUID
    ) -> List[PlatformConnection]:
        """All active connections for a user, newest first."""
        try:
            result = await self.session.execute(
                select(PlatformConnection)
                .where(PlatformConnection.user_id == user_id)
                .where(PlatformConnection.is_active.is_(True))
                .order_by(PlatformConnection.created_at.desc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Database error getting active connections: {e}"
            ) from e

    async def find_connections_expiring_before(
        self,
        platforms: Iterable[str],
        timestamp: datetime,
        active_only: bool = True,
    ) -> List[PlatformConnection]:
        """
        Connections on the given platforms whose token expires at or before ``timestamp``.

        Ordered by expiry so the most urgent refreshes happen first.
        """
        platforms = list(platforms)
        if not platforms:
            return []

        stmt = (
            select(PlatformConnection)
            .where(PlatformConnection.platform.in_(platforms))
            .where(PlatformConnection.token_expires_at <= timestamp)
            .order_by(PlatformConnection.token_expires_at)
        )
        if active_only:
            stmt = stmt.where(PlatformConnection.is_active.is_(True))

        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Database error getting expiring connections: {e}"
            ) from e

    # ===== Writes =====

    async def insert_connection(
        self,
        user_id: uuid.UUID,
        platform: str,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> PlatformConnection:
        """
        Insert a new active connection with encrypted tokens.

        Raises:
            RepositoryError: On duplicate (user, platform) or database failure
        """
        try:
            connection = PlatformConnection(
                id=uuid.uuid4(),
                user_id=user_id,
                platform=platform,
                external_id=external_id,
                access_token_ciphertext=self.crypto.encrypt_token(access_token),
                refresh_token_ciphertext=(
                    self.crypto.encrypt_token(refresh_token) if refresh_token else None
                ),
                token_expires_at=token_expires_at,
                is_active=True,
            )

            self.session.add(connection)
            await self.session.flush()
            await self.session.refresh(connection)

            return connection

        except IntegrityError as e:
            await self.session.rollback()
            raise RepositoryError(
                f"Connection already exists for user {user_id} on {platform}"
            ) from e
        except CryptoServiceError as e:
            await self.session.rollback()
            raise RepositoryError(f"Token encryption failed: {e}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error creating connection: {e}") from e

    async def upsert_connection(
        self,
        user_id: uuid.UUID,
        platform: str,
        access_token: str,
        token_expires_at: datetime,
        refresh_token: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> PlatformConnection:
        """
        Insert a connection, or overwrite and reactivate the existing
        (user, platform) row.

        The refresh token is overwritten as given, so platforms without
        refresh store NULL.
        """
        existing = await self.find_connection(user_id, platform)
        if existing is None:
            return await self.insert_connection(
                user_id=user_id,
                platform=platform,
                access_token=access_token,
                token_expires_at=token_expires_at,
                refresh_token=refresh_token,
                external_id=external_id,
            )

        try:
            existing.external_id = external_id
            existing.access_token_ciphertext = self.crypto.encrypt_token(access_token)
            existing.refresh_token_ciphertext = (
                self.crypto.encrypt_token(refresh_token) if refresh_token else None
            )
            existing.token_expires_at = token_expires_at
            existing.is_active = True
            existing.updated_at = utcnow()

            await self.session.flush()
            return existing

        except CryptoServiceError as e:
            await self.session.rollback()
            raise RepositoryError(f"Token encryption failed: {e}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error updating connection: {e}") from e

    async def update_connection(
        self, connection_id: uuid.UUID, **fields: Any
    ) -> PlatformConnection:
        """
        Apply a partial update to one connection.

        ``access_token`` and ``refresh_token`` are accepted in plaintext and
        encrypted; a ``refresh_token`` of None leaves the stored one untouched.
        ``updated_at`` is always bumped.

        Raises:
            ConnectionNotFoundError: If no row has this id
        """
        connection = await self.find_connection_by_id(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")

        try:
            if "access_token" in fields:
                connection.access_token_ciphertext = self.crypto.encrypt_token(
                    fields.pop("access_token")
                )
            refresh_token = fields.pop("refresh_token", None)
            if refresh_token:
                connection.refresh_token_ciphertext = self.crypto.encrypt_token(
                    refresh_token
                )

            for name, value in fields.items():
                if not hasattr(PlatformConnection, name):
                    raise RepositoryError(f"Unknown connection field: {name}")
                setattr(connection, name, value)

            connection.updated_at = utcnow()
            await self.session.flush()
            return connection

        except CryptoServiceError as e:
            await self.session.rollback()
            raise RepositoryError(f"Token encryption failed: {e}") from e
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error updating connection: {e}") from e

    async def deactivate_connection(self, user_id: uuid.UUID, platform: str) -> int:
        """
        Mark the (user, platform) connection inactive.

        Returns:
            Number of rows matched (0 when the user never connected)
        """
        try:
            result = await self.session.execute(
                update(PlatformConnection)
                .where(PlatformConnection.user_id == user_id)
                .where(PlatformConnection.platform == platform)
                .values(is_active=False, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error deactivating connection: {e}") from e

    async def deactivate_connection_by_id(self, connection_id: uuid.UUID) -> int:
        """Mark a single connection inactive by id."""
        try:
            result = await self.session.execute(
                update(PlatformConnection)
                .where(PlatformConnection.id == connection_id)
                .values(is_active=False, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(f"Database error deactivating connection: {e}") from e

    async def deactivate_connections_older_than(self, timestamp: datetime) -> int:
        """
        Deactivate every active connection whose token expired before ``timestamp``.

        Returns:
            Number of connections deactivated
        """
        try:
            result = await self.session.execute(
                update(PlatformConnection)
                .where(PlatformConnection.token_expires_at < timestamp)
                .where(PlatformConnection.is_active.is_(True))
                .values(is_active=False, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise RepositoryError(
                f"Database error deactivating stale connections: {e}"
            ) from e

    # ===== Token decryption =====

    def decrypt_access_token(self, connection: PlatformConnection) -> str:
        """
        Raises:
            RepositoryError: If decryption fails
        """
        try:
            return self.crypto.decrypt_token(connection.access_token_ciphertext)
        except CryptoServiceError as e:
            raise RepositoryError(f"Failed to decrypt access token: {e}") from e

    def decrypt_refresh_token(self, connection: PlatformConnection) -> Optional[str]:
        """Decrypted refresh token, or None when the connection has none."""
        if not connection.refresh_token_ciphertext:
            return None
        try:
            return self.crypto.decrypt_token(connection.refresh_token_ciphertext)
        except CryptoServiceError as e:
            raise RepositoryError(f"Failed to decrypt refresh token: {e}") from e
