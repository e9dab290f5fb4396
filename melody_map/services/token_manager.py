"""
Token lifecycle manager for streaming-platform connections.

Guarantees that anyone asking for "the access token for user U on platform P"
gets either a token that is currently safe to use or a definitive "not usable"
answer. Handles:
- Staleness checks with a fixed lookahead buffer
- Refresh-token exchange against the provider token endpoint
- Deactivation of connections whose refresh grant has been revoked
- Single-flight refresh per connection (concurrent callers share one exchange)
- Optional token verification against the provider profile endpoint

Public operations never raise for expected conditions; they return None,
False or a tagged result and log. Unexpected exceptions are caught at each
operation boundary.
"""

import asyncio
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..db import (
    PlatformConnection,
    PlatformConnectionsRepository,
    utcnow,
    with_unit_of_work,
)
from ..utils.crypto import CryptoService
from .providers import ProviderDescriptor, ProviderRegistry

logger = structlog.get_logger(__name__)

UserId = Union[uuid.UUID, str]

DEFAULT_EXPIRES_IN_SECONDS = 3600


class TokenManagerError(Exception):
    """Raised for invalid use of the token manager (not for refresh failures)."""

    pass


class RefreshResult(NamedTuple):
    """Result of a token refresh operation with failure classification."""

    success: bool
    classification: str = "success"  # "success", "transient", "terminal", "skipped"
    error: Optional[str] = None
    access_token: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.classification == "terminal"


class TokenStatus(str, Enum):
    """Why a token lookup did or did not produce a usable token."""

    VALID = "valid"
    REFRESHED = "refreshed"
    NOT_CONNECTED = "not_connected"
    INACTIVE = "inactive"
    REFRESH_FAILED = "refresh_failed"
    REAUTH_REQUIRED = "reauth_required"
    ERROR = "error"


class VerifyOutcome(str, Enum):
    """Result of a profile-call token check."""

    VALID = "valid"
    REJECTED = "rejected"  # provider explicitly refused the token
    UNAVAILABLE = "unavailable"  # outage, timeout or unexpected response


class TokenLookup(NamedTuple):
    """Access token plus the reason it is (or is not) available."""

    access_token: Optional[str]
    status: TokenStatus

    @property
    def usable(self) -> bool:
        return self.access_token is not None


class RefreshMetrics:
    """Counters for refresh operations, exposed on the health endpoint."""

    def __init__(self):
        self.refresh_attempts_total = 0
        self.refresh_success_total = 0
        self.refresh_failures = defaultdict(int)  # by classification
        self.refresh_latencies: List[float] = []  # last 100 latencies
        self.deduplicated_refreshes = 0

    def record_success(self, latency_ms: float) -> None:
        self.refresh_attempts_total += 1
        self.refresh_success_total += 1
        self.refresh_latencies.append(latency_ms)
        if len(self.refresh_latencies) > 100:
            self.refresh_latencies = self.refresh_latencies[-100:]

    def record_failure(self, classification: str) -> None:
        self.refresh_attempts_total += 1
        self.refresh_failures[classification] += 1

    def get_metrics_summary(self) -> Dict[str, Any]:
        return {
            "refresh_attempts_total": self.refresh_attempts_total,
            "refresh_success_total": self.refresh_success_total,
            "success_rate": (
                self.refresh_success_total / max(1, self.refresh_attempts_total)
            ),
            "avg_latency_ms": (
                sum(self.refresh_latencies) / max(1, len(self.refresh_latencies))
            ),
            "failures_by_reason": dict(self.refresh_failures),
            "deduplicated_refreshes": self.deduplicated_refreshes,
        }


def _as_uuid(value: UserId) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class TokenLifecycleManager:
    """
    Owns reading, refreshing and deactivating platform credentials.

    One instance lives for the whole process (created in the app lifespan) so
    the in-flight refresh map is shared by request handlers and the background
    scheduler.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoService,
        http_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[ProviderRegistry] = None,
    ):
        """
        Args:
            settings: Application settings (buffer, timeouts, retry policy)
            session_factory: Factory for short-lived database sessions
            crypto: Crypto service for token encryption/decryption
            http_client: Shared client for provider calls (created if omitted)
            registry: Provider registry (built from settings if omitted)
        """
        self.settings = settings
        self.session_factory = session_factory
        self.crypto = crypto
        self.registry = registry or ProviderRegistry(settings)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.provider_timeout_seconds),
            follow_redirects=False,
        )

        # connection id -> in-flight refresh task
        self._inflight: Dict[str, asyncio.Task] = {}
        self.refresh_metrics = RefreshMetrics()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_http_client:
            await self.http_client.aclose()

    def repository(self, session: AsyncSession) -> PlatformConnectionsRepository:
        return PlatformConnectionsRepository(session, self.crypto)

    # ===== Staleness =====

    @property
    def buffer_seconds(self) -> float:
        return self.settings.token_refresh_buffer_minutes * 60

    def stale_before(self, now: Optional[datetime] = None) -> datetime:
        """Tokens expiring at or before this instant count as stale."""
        return (now or utcnow()) + timedelta(seconds=self.buffer_seconds)

    def is_token_stale(
        self, connection: PlatformConnection, provider: ProviderDescriptor
    ) -> bool:
        """
        Whether the stored access token must be refreshed before use.

        Tokens of non-expiring providers are never stale.
        """
        if not provider.expiring_tokens:
            return False
        return connection.is_expiring_within(self.buffer_seconds)

    # ===== Token lookup =====

    async def resolve_access_token(self, user_id: UserId, platform: str) -> TokenLookup:
        """
        Return a usable access token for (user, platform) with the reason.

        Fresh tokens are returned without any network call. Stale tokens are
        refreshed synchronously and the connection is re-read afterwards.
        """
        try:
            provider = self.registry.get(platform)
            user_uuid = _as_uuid(user_id)

            async with with_unit_of_work(self.session_factory) as session:
                repo = self.repository(session)
                connection = await repo.find_connection(
                    user_uuid, provider.platform.value
                )

                if connection is None:
                    logger.debug(
                        "No connection for platform",
                        user_id=str(user_uuid),
                        platform=provider.platform.value,
                    )
                    return TokenLookup(None, TokenStatus.NOT_CONNECTED)

                if not connection.is_active:
                    logger.debug(
                        "Connection inactive",
                        connection_id=str(connection.id),
                        platform=provider.platform.value,
                    )
                    return TokenLookup(None, TokenStatus.INACTIVE)

                if not self.is_token_stale(connection, provider):
                    return TokenLookup(
                        repo.decrypt_access_token(connection), TokenStatus.VALID
                    )

                connection_id = connection.id

            logger.info(
                "Access token stale, refreshing",
                connection_id=str(connection_id),
                platform=provider.platform.value,
            )
            result = await self.refresh_connection(connection_id)

            if not result.success:
                status = (
                    TokenStatus.REAUTH_REQUIRED
                    if result.is_terminal
                    else TokenStatus.REFRESH_FAILED
                )
                return TokenLookup(None, status)

            async with with_unit_of_work(self.session_factory) as session:
                repo = self.repository(session)
                refreshed = await repo.find_connection_by_id(connection_id)
                if refreshed is None or not refreshed.is_active:
                    return TokenLookup(None, TokenStatus.INACTIVE)
                return TokenLookup(
                    repo.decrypt_access_token(refreshed), TokenStatus.REFRESHED
                )

        except Exception as e:
            logger.error(
                "Error resolving access token",
                user_id=str(user_id),
                platform=str(platform),
                error=str(e),
            )
            return TokenLookup(None, TokenStatus.ERROR)

    async def get_valid_access_token(
        self, user_id: UserId, platform: str
    ) -> Optional[str]:
        """
        Main entry point for code that calls a provider API.

        Returns:
            A currently valid access token, or None when the user has to
            (re)connect the platform
        """
        lookup = await self.resolve_access_token(user_id, platform)
        return lookup.access_token

    # ===== Refresh =====

    def is_refresh_in_progress(self, connection_id: Union[uuid.UUID, str]) -> bool:
        return str(connection_id) in self._inflight

    async def refresh_connection(
        self, connection_id: Union[uuid.UUID, str]
    ) -> RefreshResult:
        """
        Refresh one connection's access token, sharing the exchange with any
        concurrent caller refreshing the same connection.
        """
        key = str(connection_id)
        task = self._inflight.get(key)

        if task is None:
            task = asyncio.ensure_future(self._refresh_connection(_as_uuid(key)))
            self._inflight[key] = task
            task.add_done_callback(lambda _task: self._inflight.pop(key, None))
        else:
            self.refresh_metrics.deduplicated_refreshes += 1
            logger.debug("Joining in-flight token refresh", connection_id=key)

        # Shielded so a cancelled caller does not cancel the shared exchange
        return await asyncio.shield(task)

    async def refresh_token(self, connection_id: Union[uuid.UUID, str]) -> bool:
        """Boolean form of refresh_connection for manual "refresh now" actions."""
        result = await self.refresh_connection(connection_id)
        return result.success

    async def _refresh_connection(self, connection_id: uuid.UUID) -> RefreshResult:
        """Load, exchange, persist. Never raises."""
        start_time = time.time()

        try:
            async with with_unit_of_work(self.session_factory) as session:
                repo = self.repository(session)
                connection = await repo.find_connection_by_id(connection_id)

                if connection is None:
                    return RefreshResult(
                        success=False,
                        classification="skipped",
                        error="Connection not found",
                    )

                provider = self.registry.get(connection.platform)

                if not provider.supports_refresh or not connection.has_refresh_token:
                    logger.debug(
                        "Connection has no refresh capability",
                        connection_id=str(connection_id),
                        platform=connection.platform,
                    )
                    return RefreshResult(
                        success=False,
                        classification="skipped",
                        error="No refresh token",
                    )

                if not connection.is_active:
                    return RefreshResult(
                        success=False,
                        classification="skipped",
                        error="Connection inactive",
                    )

                refresh_token = repo.decrypt_refresh_token(connection)

            # Network exchange runs outside any open transaction
            result, token_response = await self._request_token_refresh(
                provider, refresh_token, connection_id
            )

            if result.success:
                expires_in = int(
                    token_response.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
                )
                new_expires_at = utcnow() + timedelta(seconds=expires_in)

                async with with_unit_of_work(self.session_factory) as session:
                    await self.repository(session).update_connection(
                        connection_id,
                        access_token=token_response["access_token"],
                        # Providers may rotate refresh tokens; None keeps the old one
                        refresh_token=token_response.get("refresh_token"),
                        token_expires_at=new_expires_at,
                    )

                latency_ms = (time.time() - start_time) * 1000
                self.refresh_metrics.record_success(latency_ms)
                logger.info(
                    "Token refresh completed and stored",
                    connection_id=str(connection_id),
                    platform=provider.platform.value,
                    new_expires_at=new_expires_at.isoformat(),
                    has_new_refresh_token=bool(token_response.get("refresh_token")),
                    latency_ms=round(latency_ms, 2),
                )
                return result

            if result.is_terminal:
                async with with_unit_of_work(self.session_factory) as session:
                    await self.repository(session).deactivate_connection_by_id(
                        connection_id
                    )
                logger.warning(
                    "Refresh grant revoked, connection deactivated",
                    connection_id=str(connection_id),
                    platform=provider.platform.value,
                    error=result.error,
                )

            self.refresh_metrics.record_failure(result.classification)
            return result

        except Exception as e:
            # Unexpected errors are treated as transient
            logger.error(
                "Unexpected error during token refresh",
                connection_id=str(connection_id),
                error=str(e),
            )
            self.refresh_metrics.record_failure("transient")
            return RefreshResult(
                success=False, classification="transient", error=f"Unexpected: {e}"
            )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Network error during token refresh, retrying",
            attempt=retry_state.attempt_number,
            error=str(exc),
        )

    async def _request_token_refresh(
        self,
        provider: ProviderDescriptor,
        refresh_token: str,
        connection_id: uuid.UUID,
    ) -> Tuple[RefreshResult, Dict[str, Any]]:
        """
        POST a refresh_token grant to the provider and classify the outcome.

        Network failures are retried with exponential backoff before being
        reported as transient. Only the provider's terminal error codes
        (invalid_grant) are classified as terminal.
        """
        headers, data = provider.build_refresh_request(refresh_token)

        logger.info(
            "Attempting token refresh",
            connection_id=str(connection_id),
            platform=provider.platform.value,
        )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.oauth_refresh_max_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.oauth_refresh_backoff_seconds, max=10
                ),
                retry=retry_if_exception_type(httpx.TransportError),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    response = await self.http_client.post(
                        provider.token_url, data=data, headers=headers
                    )
        except httpx.TransportError as e:
            logger.warning(
                "Token refresh network failure",
                connection_id=str(connection_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return (
                RefreshResult(
                    success=False, classification="transient", error=f"Network: {e}"
                ),
                {},
            )

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        error_code = payload.get("error")
        if isinstance(error_code, dict):
            error_code = error_code.get("type") or error_code.get("code")

        if response.is_success and not error_code and payload.get("access_token"):
            logger.info(
                "Token refresh successful",
                connection_id=str(connection_id),
                has_new_refresh_token=bool(payload.get("refresh_token")),
            )
            return RefreshResult(success=True, classification="success"), payload

        if provider.is_terminal_error(error_code):
            logger.warning(
                "Terminal refresh error",
                connection_id=str(connection_id),
                error_code=error_code,
                status_code=response.status_code,
            )
            return (
                RefreshResult(
                    success=False,
                    classification="terminal",
                    error=f"Terminal: {error_code}",
                ),
                payload,
            )

        logger.warning(
            "Transient refresh error",
            connection_id=str(connection_id),
            error_code=error_code,
            error_description=payload.get("error_description"),
            status_code=response.status_code,
        )
        return (
            RefreshResult(
                success=False,
                classification="transient",
                error=f"HTTP {response.status_code}: {error_code or 'no access_token'}",
            ),
            payload,
        )

    # ===== Verification =====

    async def check_token(self, platform: str, access_token: str) -> VerifyOutcome:
        """
        Check a token with a lightweight profile call. Pure read, no mutation.

        Only an explicit refusal is REJECTED: HTTP 401, or a success response
        whose body carries an ``error`` object (Deezer's style). Network
        errors, timeouts, other non-2xx statuses and unparseable bodies are
        UNAVAILABLE. Deciding whether to deactivate is up to the caller.
        """
        try:
            provider = self.registry.get(platform)
            headers, params = provider.build_verify_request(access_token)
            response = await self.http_client.get(
                provider.verify_url, headers=headers, params=params
            )
        except Exception as e:
            logger.warning(
                "Token verification error", platform=str(platform), error=str(e)
            )
            return VerifyOutcome.UNAVAILABLE

        if response.status_code == 401:
            logger.info(
                "Token verification rejected by provider",
                platform=provider.platform.value,
                status_code=response.status_code,
            )
            return VerifyOutcome.REJECTED

        if not response.is_success:
            logger.warning(
                "Token verification failed",
                platform=provider.platform.value,
                status_code=response.status_code,
            )
            return VerifyOutcome.UNAVAILABLE

        try:
            payload = response.json()
        except ValueError:
            return VerifyOutcome.UNAVAILABLE

        if isinstance(payload, dict) and payload.get("error"):
            logger.info(
                "Token verification rejected by provider",
                platform=provider.platform.value,
                error=payload.get("error"),
            )
            return VerifyOutcome.REJECTED

        return VerifyOutcome.VALID

    async def verify_token(self, platform: str, access_token: str) -> bool:
        """True only when the provider accepts the token."""
        return await self.check_token(platform, access_token) is VerifyOutcome.VALID

    # ===== Connection state =====

    async def mark_connection_inactive(self, user_id: UserId, platform: str) -> bool:
        """
        Deactivate the (user, platform) connection. Idempotent.

        Returns:
            True if a connection row exists (now inactive), False otherwise
        """
        try:
            async with with_unit_of_work(self.session_factory) as session:
                updated = await self.repository(session).deactivate_connection(
                    _as_uuid(user_id), str(platform)
                )
            logger.info(
                "Connection marked inactive",
                user_id=str(user_id),
                platform=str(platform),
                rows=updated,
            )
            return updated > 0
        except Exception as e:
            logger.error(
                "Error marking connection inactive",
                user_id=str(user_id),
                platform=str(platform),
                error=str(e),
            )
            return False

    async def save_connection(
        self,
        user_id: UserId,
        platform: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        external_id: Optional[str] = None,
    ) -> PlatformConnection:
        """
        Store credentials from a completed OAuth callback.

        Creates the (user, platform) connection or overwrites and reactivates
        the existing one. Non-expiring providers get a far-future expiry and no
        refresh token.

        Raises:
            TokenManagerError: If a refreshable provider is saved without a refresh token
            UnsupportedPlatformError: For unmanaged platforms
            RepositoryError: On storage failure
        """
        provider = self.registry.get(platform)

        if provider.expiring_tokens:
            if provider.supports_refresh and not refresh_token:
                raise TokenManagerError(
                    f"{provider.display_name} connections require a refresh token"
                )
            lifetime = timedelta(seconds=expires_in or DEFAULT_EXPIRES_IN_SECONDS)
        else:
            lifetime = timedelta(days=self.settings.non_expiring_token_days)
            refresh_token = None

        async with with_unit_of_work(self.session_factory) as session:
            connection = await self.repository(session).upsert_connection(
                user_id=_as_uuid(user_id),
                platform=provider.platform.value,
                access_token=access_token,
                token_expires_at=utcnow() + lifetime,
                refresh_token=refresh_token,
                external_id=external_id,
            )

        logger.info(
            "Platform connection stored",
            connection_id=str(connection.id),
            user_id=str(user_id),
            platform=provider.platform.value,
            expires_at=connection.token_expires_at.isoformat(),
        )
        return connection

    async def get_connection(
        self, user_id: UserId, platform: str
    ) -> Optional[PlatformConnection]:
        """The (user, platform) connection regardless of active state."""
        async with with_unit_of_work(self.session_factory) as session:
            return await self.repository(session).find_connection(
                _as_uuid(user_id), str(platform)
            )

    async def list_connections(self, user_id: UserId) -> List[PlatformConnection]:
        """All active connections for a user."""
        async with with_unit_of_work(self.session_factory) as session:
            return await self.repository(session).list_active_connections(
                _as_uuid(user_id)
            )
