"""
Platform connection endpoints.

Thin HTTP surface over the TokenLifecycleManager: list connections with token
status, per-platform status, manual refresh, disconnect, and a live
connectivity test. Routes that call a provider on the user's behalf depend on
``require_access_token``, which turns "no usable token" into a 401 the
frontend understands as "send the user through OAuth again".
"""

import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..config import Settings, get_settings
from ..db import utcnow
from ..services.providers import ProviderDescriptor, UnsupportedPlatformError
from ..services.token_manager import TokenLifecycleManager, VerifyOutcome
from ..utils.logging import get_logger, set_request_context

router = APIRouter()
logger = get_logger(__name__)


# ===== Dependencies =====


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),  # noqa: B008
) -> str:
    """Verify the service API key from the request header."""
    if not x_api_key or x_api_key != settings.api_key:
        logger.warning(
            "Invalid API key attempt",
            provided_key_prefix=x_api_key[:8] if x_api_key else None,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )

    return x_api_key


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> uuid.UUID:
    """Authenticated user id forwarded by the gateway."""
    try:
        user_id = uuid.UUID(x_user_id or "")
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid user identity",
        )

    set_request_context(user_id=str(user_id))
    return user_id


def get_token_manager(request: Request) -> TokenLifecycleManager:
    """The process-wide token manager created in the application lifespan."""
    manager = getattr(request.app.state, "token_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token service not initialized",
        )
    return manager


def get_provider(
    platform: str,
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> ProviderDescriptor:
    try:
        return manager.registry.get(platform)
    except UnsupportedPlatformError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unsupported platform: {platform}",
        )


async def require_access_token(
    provider: ProviderDescriptor = Depends(get_provider),  # noqa: B008
    user_id: uuid.UUID = Depends(get_current_user_id),  # noqa: B008
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> str:
    """
    Resolve a usable access token or reject the request.

    Raises:
        HTTPException: 401 with ``<PLATFORM>_NOT_CONNECTED`` and
            ``action: "reconnect"`` when no usable token exists
    """
    lookup = await manager.resolve_access_token(user_id, provider.platform.value)

    if not lookup.usable:
        logger.info(
            "No usable access token",
            user_id=str(user_id),
            platform=provider.platform.value,
            status=lookup.status.value,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": provider.not_connected_code,
                "message": f"{provider.display_name} not connected or token expired",
                "action": "reconnect",
                "reason": lookup.status.value,
            },
        )

    return lookup.access_token


# ===== Routes =====


@router.get(
    "",
    summary="List connections",
    description="Active platform connections with token status",
)
async def list_connections(
    _: str = Depends(verify_api_key),
    user_id: uuid.UUID = Depends(get_current_user_id),  # noqa: B008
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> Dict[str, Any]:
    """
    Example response:
        {
            "connections": [
                {
                    "platform": "spotify",
                    "externalId": "abc123",
                    "connectedAt": "2025-01-20T15:30:45+00:00",
                    "tokenExpiresAt": "2025-01-20T16:30:45+00:00",
                    "tokenValid": true,
                    "expiresIn": 3412
                }
            ]
        }
    """
    connections = await manager.list_connections(user_id)
    now = utcnow()

    return {
        "connections": [
            {
                "platform": connection.platform,
                "externalId": connection.external_id,
                "connectedAt": connection.created_at.isoformat(),
                "tokenExpiresAt": connection.token_expires_at.isoformat(),
                "tokenValid": connection.token_expires_at > now,
                "expiresIn": connection.seconds_until_expiry(now),
            }
            for connection in connections
        ]
    }


@router.get("/{platform}/status", summary="Connection status for one platform")
async def connection_status(
    _: str = Depends(verify_api_key),
    provider: ProviderDescriptor = Depends(get_provider),  # noqa: B008
    user_id: uuid.UUID = Depends(get_current_user_id),  # noqa: B008
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> Dict[str, Any]:
    connection = await manager.get_connection(user_id, provider.platform.value)

    if connection is None:
        return {"connected": False, "platform": provider.platform.value}

    return {
        "connected": connection.is_active,
        "platform": provider.platform.value,
        "isActive": connection.is_active,
        "externalId": connection.external_id,
        "connectedAt": connection.created_at.isoformat(),
        "lastUpdated": connection.updated_at.isoformat(),
    }


@router.post("/{platform}/refresh", summary="Refresh tokens now")
async def refresh_connection(
    _: str = Depends(verify_api_key),
    provider: ProviderDescriptor = Depends(get_provider),  # noqa: B008
    user_id: uuid.UUID = Depends(get_current_user_id),  # noqa: B008
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> Dict[str, Any]:
    """
    Refresh the user's active connection on this platform immediately.

    A platform without refresh support reports ``classification: "skipped"``.
    """
    connection = await manager.get_connection(user_id, provider.platform.value)

    results = []
    if connection is not None and connection.is_active:
        result = await manager.refresh_connection(connection.id)
        results.append(
            {
                "connectionId": str(connection.id),
                "success": result.success,
                "classification": result.classification,
            }
        )

    return {"message": "Token refresh completed", "results": results}


@router.post("/{platform}/disconnect", summary="Disconnect a platform")
async def disconnect(
    _: str = Depends(verify_api_key),
    provider: ProviderDescriptor = Depends(get_provider),  # noqa: B008
    user_id: uuid.UUID = Depends(get_current_user_id),  # noqa: B008
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> Dict[str, Any]:
    disconnected = await manager.mark_connection_inactive(
        user_id, provider.platform.value
    )

    if not disconnected:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {provider.display_name} connection found",
        )

    return {
        "success": True,
        "message": f"{provider.display_name} disconnected successfully",
    }


@router.get("/{platform}/test", summary="Test provider connectivity")
async def test_connection(
    _: str = Depends(verify_api_key),
    access_token: str = Depends(require_access_token),
    provider: ProviderDescriptor = Depends(get_provider),  # noqa: B008
    user_id: uuid.UUID = Depends(get_current_user_id),  # noqa: B008
    manager: TokenLifecycleManager = Depends(get_token_manager),  # noqa: B008
) -> Dict[str, Any]:
    """
    Call the provider's profile endpoint with the user's token.

    A token the provider explicitly rejects deactivates the connection. A
    provider outage returns 503 and leaves the connection untouched.
    """
    outcome = await manager.check_token(provider.platform.value, access_token)

    if outcome is VerifyOutcome.VALID:
        return {"connected": True, "platform": provider.platform.value}

    if outcome is VerifyOutcome.UNAVAILABLE:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{provider.display_name} is unavailable, try again later",
        )

    await manager.mark_connection_inactive(user_id, provider.platform.value)
    return {
        "connected": False,
        "platform": provider.platform.value,
        "reason": f"{provider.display_name} rejected the access token",
    }
