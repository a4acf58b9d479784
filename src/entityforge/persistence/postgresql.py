"""PostgreSQL database over a psycopg v3 connection pool.

The query builder emits PostgreSQL-style ``$n`` placeholders. psycopg uses
``%s`` / ``%(name)s`` instead, so every statement is rewritten before it is
executed:

  - literal ``%`` is doubled so psycopg does not read it as a placeholder
  - ``$n`` becomes ``%(pn)s`` and the parameter list becomes ``{"pn": ...}``

Named parameters let one value be referenced more than once, which ``$n``
allows and positional ``%s`` does not.

Connections run in autocommit mode with ``dict_row`` rows. Transactions are
driven by literal ``BEGIN`` / ``COMMIT`` / ``ROLLBACK`` statements from the
caller.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

from entityforge.persistence.adapter import QueryResult

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$(\d+)")


def convert_placeholders(
    sql: str, params: Sequence[Any] | None
) -> tuple[str, dict[str, Any] | None]:
    """Rewrite ``$n`` placeholders to psycopg named parameters.

    Example:
        convert_placeholders("name ILIKE $1 OR email ILIKE $1", ["%a%"])
        # ("name ILIKE %(p1)s OR email ILIKE %(p1)s", {"p1": "%a%"})

    Statements without parameters are returned untouched; psycopg does not
    interpret ``%`` when no parameters are passed.
    """
    if not params:
        return sql, None
    converted = _PLACEHOLDER.sub(lambda m: f"%(p{m.group(1)})s", sql.replace("%", "%%"))
    named = {f"p{i}": value for i, value in enumerate(params, start=1)}
    return converted, named


def _execute(conn: Any, sql: str, params: Sequence[Any] | None) -> QueryResult:
    converted, named = convert_placeholders(sql, params)
    cur = conn.execute(converted, named)
    rows = cur.fetchall() if cur.description is not None else []
    return QueryResult(rows=list(rows), rowcount=cur.rowcount)


class PostgresClient:
    """A pooled connection checked out for a transaction."""

    def __init__(self, conn: Any, pool: Any):
        self.conn = conn
        self._pool = pool

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        if self.conn is None:
            raise RuntimeError("Client has been released")
        return _execute(self.conn, sql, params)

    def release(self) -> None:
        """Return the connection to the pool. Safe to call twice."""
        if self.conn is None:
            return
        conn, self.conn = self.conn, None
        self._pool.putconn(conn)


class PostgresDatabase:
    """PostgreSQL database using a psycopg_pool ConnectionPool."""

    def __init__(self, url: str, min_size: int = 1, max_size: int = 10):
        self.url = url
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Any = None

    def open(self) -> None:
        """Open the connection pool."""
        from psycopg.rows import dict_row
        from psycopg_pool import ConnectionPool

        self.pool = ConnectionPool(
            self.url,
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=True,
        )
        logger.info(
            "Opened PostgreSQL pool (min_size=%d, max_size=%d)",
            self.min_size,
            self.max_size,
        )

    def close(self) -> None:
        """Close the connection pool."""
        if self.pool is not None:
            self.pool.close()
            self.pool = None

    def __enter__(self) -> PostgresDatabase:
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _require_pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("Database not connected")
        return self.pool

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        with self._require_pool().connection() as conn:
            return _execute(conn, sql, params)

    @contextmanager
    def client(self) -> Iterator[PostgresClient]:
        pool = self._require_pool()
        client = PostgresClient(pool.getconn(), pool)
        try:
            yield client
        finally:
            client.release()
