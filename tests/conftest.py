"""
Shared test fixtures for the Melody Map token service.

Provides settings, a file-backed SQLite database per test, the crypto
service, a scriptable fake of the provider endpoints (served through
httpx.MockTransport), and helpers to seed users and platform connections.
"""

import asyncio
import os
import tempfile
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

TEST_API_KEY = "test-api-key-0123456789-abcdefghijklmnop"

# Set test environment before importing the app
os.environ.update(
    {
        "APP_ENV": "test",
        "LOG_LEVEL": "DEBUG",
        "API_KEY": TEST_API_KEY,
        "DATABASE_URL": "sqlite+aiosqlite:///"
        + os.path.join(tempfile.gettempdir(), "melody_map_app_test.db"),
        "TOKEN_REFRESH_SCHEDULER_ENABLED": "false",
    }
)

from dotenv import load_dotenv

load_dotenv()

from melody_map.config import Settings
from melody_map.db import (
    PlatformConnectionsRepository,
    User,
    create_engine_for_url,
    create_tables,
    utcnow,
    with_unit_of_work,
)
from melody_map.services.token_manager import TokenLifecycleManager
from melody_map.utils.crypto import CryptoService, generate_fernet_key

SPOTIFY_TOKEN_PATH = "/api/token"


@pytest.fixture
def settings() -> Settings:
    """Settings with fast, deterministic timing for tests."""
    return Settings(
        _env_file=None,
        app_env="test",
        api_key=TEST_API_KEY,
        fernet_key=generate_fernet_key(),
        spotify_client_id="spotify-client-id",
        spotify_client_secret="spotify-client-secret",
        deezer_app_id="deezer-app-id",
        deezer_secret="deezer-secret",
        token_refresh_delay_ms=0,
        oauth_refresh_backoff_seconds=0,
    )


@pytest.fixture
async def engine(tmp_path, settings):
    """File-backed SQLite engine with all tables created."""
    engine = create_engine_for_url(
        f"sqlite+aiosqlite:///{tmp_path / 'tokens.db'}", settings
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def crypto(settings) -> CryptoService:
    return CryptoService(settings.fernet_key, additional_keys_b64="")


class FakeProviders:
    """
    Scriptable stand-in for the Spotify token endpoint and the provider
    profile endpoints.

    ``token_outcomes`` is a queue of ``(status, json)`` tuples or exceptions;
    once empty, ``default_token_outcome`` is used. Every request is recorded.
    """

    def __init__(self):
        self.token_outcomes: List[Union[tuple, Exception]] = []
        self.default_token_outcome = (200, {"access_token": "B", "expires_in": 3600})
        self.verify_outcome = (200, {"id": "remote-user"})
        self.token_delay = 0.0
        self.token_requests: List[httpx.Request] = []
        self.verify_requests: List[httpx.Request] = []

    @property
    def token_calls(self) -> int:
        return len(self.token_requests)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == SPOTIFY_TOKEN_PATH:
            self.token_requests.append(request)
            if self.token_delay:
                await asyncio.sleep(self.token_delay)
            outcome = (
                self.token_outcomes.pop(0)
                if self.token_outcomes
                else self.default_token_outcome
            )
        else:
            self.verify_requests.append(request)
            outcome = self.verify_outcome

        if isinstance(outcome, Exception):
            raise outcome

        status_code, payload = outcome
        if isinstance(payload, (dict, list)):
            return httpx.Response(status_code, json=payload)
        return httpx.Response(status_code, text=payload or "")


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
async def http_client(providers):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(providers.handler)
    ) as client:
        yield client


@pytest.fixture
def manager(settings, session_factory, crypto, http_client) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        settings, session_factory, crypto, http_client=http_client
    )


@pytest.fixture
async def user_id(session_factory) -> uuid.UUID:
    """A persisted user to own connections."""
    user = User(id=uuid.uuid4(), email=f"{uuid.uuid4().hex[:8]}@example.com")
    async with with_unit_of_work(session_factory) as session:
        session.add(user)
    return user.id


@pytest.fixture
def make_connection(session_factory, crypto):
    """
    Factory for stored connections.

    ``expires_in`` is a timedelta relative to now (negative for already
    expired tokens).
    """

    async def _make(
        user_id: uuid.UUID,
        platform: str = "spotify",
        access_token: str = "A",
        refresh_token: Optional[str] = "R",
        expires_in: timedelta = timedelta(hours=1),
        is_active: bool = True,
    ):
        async with with_unit_of_work(session_factory) as session:
            repo = PlatformConnectionsRepository(session, crypto)
            connection = await repo.insert_connection(
                user_id=user_id,
                platform=platform,
                access_token=access_token,
                token_expires_at=utcnow() + expires_in,
                refresh_token=refresh_token,
            )
            if not is_active:
                await repo.update_connection(connection.id, is_active=False)
        return connection

    return _make


@pytest.fixture
def load_connection(session_factory, crypto):
    """Reload a connection and its decrypted tokens from the database."""

    async def _load(connection_id: uuid.UUID) -> Dict[str, Any]:
        async with with_unit_of_work(session_factory) as session:
            repo = PlatformConnectionsRepository(session, crypto)
            connection = await repo.find_connection_by_id(connection_id)
            return {
                "connection": connection,
                "access_token": repo.decrypt_access_token(connection),
                "refresh_token": repo.decrypt_refresh_token(connection),
            }

    return _load
