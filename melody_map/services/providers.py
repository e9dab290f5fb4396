"""
Provider registry for streaming platforms.

Each platform is described by a small capability descriptor instead of its own
service class: whether tokens expire and can be refreshed, where the token
endpoint lives, how client credentials travel, which error codes mean the
grant is gone for good, and how to run a cheap authenticated "who am I" call.
"""

import base64
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

from ..config import Settings
from ..db.models import Platform


class UnsupportedPlatformError(ValueError):
    """Raised for platforms without a registered provider descriptor."""

    pass


@dataclass(frozen=True)
class ProviderDescriptor:
    """Capabilities and wire conventions of one OAuth provider."""

    platform: Platform
    display_name: str
    supports_refresh: bool
    expiring_tokens: bool
    verify_url: str
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    credential_style: str = "basic_auth"  # "basic_auth" or "body"
    token_param: str = "bearer"  # "bearer" or "query"
    terminal_error_codes: FrozenSet[str] = field(
        default_factory=lambda: frozenset({"invalid_grant"})
    )

    @property
    def not_connected_code(self) -> str:
        """Machine-readable code the HTTP layer returns when no token is usable."""
        return f"{self.platform.value.upper()}_NOT_CONNECTED"

    def build_refresh_request(self, refresh_token: str) -> Tuple[Dict[str, str], Dict[str, str]]:
        """
        Build headers and form body for a refresh_token grant.

        Returns:
            (headers, form data) for an application/x-www-form-urlencoded POST
        """
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}

        if self.credential_style == "basic_auth":
            credentials = f"{self.client_id or ''}:{self.client_secret or ''}"
            credentials_b64 = base64.b64encode(credentials.encode()).decode()
            headers["Authorization"] = f"Basic {credentials_b64}"
        else:
            data["client_id"] = self.client_id or ""
            data["client_secret"] = self.client_secret or ""

        return headers, data

    def build_verify_request(self, access_token: str) -> Tuple[Dict[str, str], Dict[str, str]]:
        """Headers and query params for the profile call that checks a token."""
        if self.token_param == "query":
            return {}, {"access_token": access_token}
        return {"Authorization": f"Bearer {access_token}"}, {}

    def is_terminal_error(self, error_code: Optional[str]) -> bool:
        return bool(error_code) and error_code in self.terminal_error_codes


def build_provider_registry(settings: Settings) -> Dict[Platform, ProviderDescriptor]:
    """Descriptors for every platform the token service can manage."""
    return {
        Platform.SPOTIFY: ProviderDescriptor(
            platform=Platform.SPOTIFY,
            display_name="Spotify",
            supports_refresh=True,
            expiring_tokens=True,
            token_url=settings.spotify_token_url,
            client_id=settings.spotify_client_id,
            client_secret=settings.spotify_client_secret,
            credential_style="basic_auth",
            verify_url=f"{settings.spotify_api_url.rstrip('/')}/me",
            token_param="bearer",
        ),
        # Deezer tokens (offline_access) never expire and there is no refresh grant
        Platform.DEEZER: ProviderDescriptor(
            platform=Platform.DEEZER,
            display_name="Deezer",
            supports_refresh=False,
            expiring_tokens=False,
            client_id=settings.deezer_app_id,
            client_secret=settings.deezer_secret,
            credential_style="body",
            verify_url=f"{settings.deezer_api_url.rstrip('/')}/user/me",
            token_param="query",
        ),
    }


class ProviderRegistry:
    """Lookup of provider descriptors by platform tag."""

    def __init__(self, settings: Settings):
        self._providers = build_provider_registry(settings)

    def get(self, platform) -> ProviderDescriptor:
        """
        Args:
            platform: Platform enum member or its string value

        Raises:
            UnsupportedPlatformError: If the platform is unknown or unmanaged
        """
        try:
            key = Platform(platform)
        except ValueError as e:
            raise UnsupportedPlatformError(f"Unknown platform: {platform}") from e

        provider = self._providers.get(key)
        if provider is None:
            raise UnsupportedPlatformError(
                f"Platform {key.value} has no token lifecycle support"
            )
        return provider

    def refreshable_platforms(self) -> List[str]:
        return [
            provider.platform.value
            for provider in self._providers.values()
            if provider.supports_refresh
        ]

    def platforms(self) -> List[str]:
        return [platform.value for platform in self._providers]
