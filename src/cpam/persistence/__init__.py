"""CPAM Persistence Module.

Provides engine configuration, the calculation store schema and migrations.
"""

from cpam.persistence.db import (
    CPAM_DATABASE_URL_ENV,
    DatabaseConfigError,
    get_database_url,
    get_engine,
    is_database_configured,
    reset_engine,
)
from cpam.persistence.schema import create_schema, drop_schema, metadata

__all__ = [
    "CPAM_DATABASE_URL_ENV",
    "DatabaseConfigError",
    "create_schema",
    "drop_schema",
    "get_database_url",
    "get_engine",
    "is_database_configured",
    "metadata",
    "reset_engine",
]
