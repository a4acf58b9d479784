"""Shared fixtures: the sample metadata registry and a scripted fake database."""

from __future__ import annotations

from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import pytest

from entityforge.metadata.loader import MetadataRegistry
from entityforge.persistence.adapter import QueryResult

METADATA_DIR = Path(__file__).resolve().parents[1] / "metadata"


class _Rule:
    def __init__(self, fragment: str, rows, rowcount, error, times, then):
        self.fragment = fragment
        self.rows = rows
        self.rowcount = rowcount
        self.error = error
        self.remaining = times
        self.then = then

    def matches(self, sql: str) -> bool:
        if self.remaining is not None and self.remaining <= 0:
            return False
        return self.fragment in sql


class FakeDatabase:
    """Records every statement and answers from scripted rules.

    ``on(fragment, ...)`` registers a rule matched by substring against the
    whitespace-normalized SQL. Rules are tried in registration order; a rule
    with ``times`` stops matching once used up, and ``then`` is called each
    time the rule answers. Unmatched statements return no rows.
    """

    def __init__(self):
        self.statements: list[tuple[str, list[Any]]] = []
        self.rules: list[_Rule] = []
        self.clients_acquired = 0
        self.clients_released = 0

    def on(
        self,
        fragment: str,
        rows: list[dict[str, Any]] | None = None,
        rowcount: int | None = None,
        error: Exception | None = None,
        times: int | None = None,
        then: Callable[[], None] | None = None,
    ) -> FakeDatabase:
        self.rules.append(_Rule(fragment, rows or [], rowcount, error, times, then))
        return self

    def _run(self, sql: str, params: list[Any] | None) -> QueryResult:
        normalized = " ".join(sql.split())
        self.statements.append((normalized, list(params or [])))
        for rule in self.rules:
            if rule.matches(normalized):
                if rule.remaining is not None:
                    rule.remaining -= 1
                if rule.then is not None:
                    rule.then()
                if rule.error is not None:
                    raise rule.error
                rowcount = rule.rowcount if rule.rowcount is not None else len(rule.rows)
                return QueryResult(rows=[dict(r) for r in rule.rows], rowcount=rowcount)
        return QueryResult()

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        return self._run(sql, params)

    @contextmanager
    def client(self):
        self.clients_acquired += 1
        client = FakeClient(self)
        try:
            yield client
        finally:
            client.release()

    # -- inspection helpers -------------------------------------------------

    @property
    def sql(self) -> list[str]:
        return [s for s, _ in self.statements]

    def matching(self, fragment: str) -> list[tuple[str, list[Any]]]:
        return [(s, p) for s, p in self.statements if fragment in s]

    def writes(self) -> list[str]:
        return [
            s for s in self.sql
            if s.startswith(("INSERT", "UPDATE", "DELETE"))
        ]


class FakeClient:
    def __init__(self, database: FakeDatabase):
        self.database = database
        self.released = False

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        assert not self.released, "query on a released client"
        return self.database._run(sql, params)

    def release(self) -> None:
        if not self.released:
            self.released = True
            self.database.clients_released += 1


@pytest.fixture
def registry() -> MetadataRegistry:
    return MetadataRegistry.from_path(METADATA_DIR)


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()
