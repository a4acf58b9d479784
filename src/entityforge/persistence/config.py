"""Database configuration and factory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from entityforge.persistence.postgresql import PostgresDatabase

DEFAULT_POOL_MIN_SIZE = 1
DEFAULT_POOL_MAX_SIZE = 10


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class DatabaseConfig:
    """Database connection configuration.

    Only postgresql:// URLs are supported.
    """

    url: str
    min_size: int = DEFAULT_POOL_MIN_SIZE
    max_size: int = DEFAULT_POOL_MAX_SIZE

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Create config from environment variables.

        Reads DATABASE_URL (required), ENTITYFORGE_POOL_MIN_SIZE and
        ENTITYFORGE_POOL_MAX_SIZE.
        """
        url = os.environ.get("DATABASE_URL")
        if not url:
            raise ValueError("DATABASE_URL is not set")
        return cls(
            url=url,
            min_size=_env_int("ENTITYFORGE_POOL_MIN_SIZE", DEFAULT_POOL_MIN_SIZE),
            max_size=_env_int("ENTITYFORGE_POOL_MAX_SIZE", DEFAULT_POOL_MAX_SIZE),
        )

    @property
    def is_postgresql(self) -> bool:
        return self.url.startswith(("postgresql", "postgres://"))

    @property
    def conninfo(self) -> str:
        """URL accepted by libpq, without a SQLAlchemy-style driver suffix."""
        return self.url.replace("postgresql+psycopg://", "postgresql://", 1)


def create_database(config: DatabaseConfig) -> PostgresDatabase:
    """Create a database for the configured URL (pool not yet opened).

    Raises:
        ValueError: For unsupported URL schemes.
    """
    if config.is_postgresql:
        from entityforge.persistence.postgresql import PostgresDatabase

        return PostgresDatabase(
            config.conninfo, min_size=config.min_size, max_size=config.max_size
        )

    raise ValueError(f"Unsupported database URL scheme: {config.url}")


def resolve_metadata_path(base_path: Path | None = None) -> Path:
    """Directory holding ``entities/*.yaml``.

    ENTITYFORGE_METADATA_PATH wins; otherwise ``<base_path or cwd>/metadata``.
    """
    env_path = os.environ.get("ENTITYFORGE_METADATA_PATH")
    if env_path:
        return Path(env_path)
    return (base_path or Path.cwd()) / "metadata"
