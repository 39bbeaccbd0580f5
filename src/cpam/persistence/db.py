"""Database connectivity helpers for CPAM.

Provides engine creation from environment configuration.

Environment Variables:
    CPAM_DATABASE_URL: SQLAlchemy URL of the calculation store
        (PostgreSQL in production, SQLite for local runs and tests).

When CPAM_DATABASE_URL is unset, services fall back to the in-memory
repositories.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from sqlalchemy import create_engine

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

CPAM_DATABASE_URL_ENV = "CPAM_DATABASE_URL"

_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid."""

    pass


def is_database_configured() -> bool:
    """Check if a database URL is configured via environment."""
    return bool(os.environ.get(CPAM_DATABASE_URL_ENV))


def _normalize_url(url: str) -> str:
    """Map the legacy postgres:// scheme to postgresql://."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url() -> str:
    """Get the database URL from environment.

    Raises:
        DatabaseConfigError: If CPAM_DATABASE_URL is not set.
    """
    url = os.environ.get(CPAM_DATABASE_URL_ENV)
    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {CPAM_DATABASE_URL_ENV} environment variable."
        )
    return _normalize_url(url)


def get_engine() -> Engine:
    """Get or create the process-wide engine.

    Raises:
        DatabaseConfigError: If CPAM_DATABASE_URL is not set.
    """
    global _engine

    if _engine is None:
        url = get_database_url()
        kwargs: dict[str, object] = {"pool_pre_ping": True, "echo": False}
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10)
        _engine = create_engine(url, **kwargs)
        logger.info("Created calculation store engine")

    return _engine


def reset_engine() -> None:
    """Dispose the cached engine. For testing only."""
    global _engine

    if _engine is not None:
        _engine.dispose()
        _engine = None

