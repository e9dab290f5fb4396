"""
Database module for the Melody Map token service.

Single import point for all database functionality.
All other modules should import from here, not from individual files.
"""

from .database import (
    create_engine_for_url,
    create_tables,
    drop_tables,
    get_database_url,
    get_engine,
    get_session_factory,
    on_shutdown,
    on_startup,
    ping,
    with_unit_of_work,
)
from .models import Base, Platform, PlatformConnection, User, utcnow
from .repositories import (
    ConnectionNotFoundError,
    PlatformConnectionsRepository,
    RepositoryError,
)

__all__ = [
    # Session management
    "with_unit_of_work",
    "get_engine",
    "get_session_factory",
    "get_database_url",
    "create_engine_for_url",
    # Lifecycle
    "on_startup",
    "on_shutdown",
    # Health
    "ping",
    # Testing
    "create_tables",
    "drop_tables",
    # Models
    "Base",
    "User",
    "Platform",
    "PlatformConnection",
    "utcnow",
    # Repositories
    "PlatformConnectionsRepository",
    "RepositoryError",
    "ConnectionNotFoundError",
]
