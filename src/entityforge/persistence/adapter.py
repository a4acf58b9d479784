"""Database Protocols - the interface the entity service talks to."""

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class QueryResult:
    """Rows returned by a statement, as dicts keyed by column name."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0

    @property
    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


@runtime_checkable
class DatabaseClient(Protocol):
    """A single dedicated connection.

    Statements run in autocommit mode, so transactions are controlled with
    literal ``BEGIN``, ``COMMIT``, ``ROLLBACK`` and ``SAVEPOINT`` statements.
    SQL uses ``$n`` placeholders.
    """

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult: ...

    def release(self) -> None: ...


@runtime_checkable
class Database(Protocol):
    """A pool of connections.

    ``query`` runs one statement on any pooled connection. ``client`` checks
    out a dedicated connection and returns it to the pool when the block
    exits, however it exits.
    """

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult: ...

    def client(self) -> AbstractContextManager[DatabaseClient]: ...
