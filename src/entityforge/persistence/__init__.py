"""Persistence layer - database interface, configuration, and PostgreSQL pool."""

from entityforge.persistence.adapter import Database, DatabaseClient, QueryResult
from entityforge.persistence.config import (
    DatabaseConfig,
    create_database,
    resolve_metadata_path,
)

__all__ = [
    "Database",
    "DatabaseClient",
    "DatabaseConfig",
    "QueryResult",
    "create_database",
    "resolve_metadata_path",
]
