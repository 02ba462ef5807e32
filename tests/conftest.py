"""
Pytest configuration and fixtures for dump anonymizer tests.
Provides fake database objects that record the SQL they receive, and
sample dump files.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable

import pytest
from psycopg2 import sql


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "property: mark test as property-based test")
    config.addinivalue_line("markers", "integration: needs Docker and the anonymizer image")


def render_sql(query: Any) -> str:
    """Render a psycopg2.sql composable to text without a connection."""
    if isinstance(query, str):
        return query
    if isinstance(query, sql.Composed):
        return "".join(render_sql(part) for part in query.seq)
    if isinstance(query, sql.SQL):
        return query.string
    if isinstance(query, sql.Identifier):
        return ".".join('"' + part.replace('"', '""') + '"' for part in query.strings)
    if isinstance(query, sql.Literal):
        value = query.wrapped
        if isinstance(value, str):
            return "'" + value.replace("'", "''") + "'"
        return str(value)
    raise TypeError(f"Cannot render {query!r}")


class FakeCursor:
    """
    Cursor double recording every statement

    ``results`` maps a substring of the statement to the rows it returns
    (or a callable receiving the params). ``fail_on`` maps a substring to
    the exception the statement raises. Statements between BEGIN and
    COMMIT are only kept in ``committed`` once committed.
    """

    def __init__(
        self,
        results: dict[str, Any] | None = None,
        fail_on: dict[str, Exception] | None = None,
    ):
        self.results = results or {}
        self.fail_on = fail_on or {}
        self.executed: list[str] = []
        self.params: list[Any] = []
        self.committed: list[str] = []
        self._pending: list[str] | None = None
        self._rows: list[tuple] = []

    def execute(self, query: Any, params: Any = None) -> None:
        text = render_sql(query)
        self.executed.append(text)
        self.params.append(params)

        for marker, error in self.fail_on.items():
            if marker in text:
                raise error

        if text == "BEGIN":
            self._pending = []
        elif text == "COMMIT":
            self.committed.extend(self._pending or [])
            self._pending = None
        elif text == "ROLLBACK":
            self._pending = None
        elif self._pending is not None:
            self._pending.append(text)
        else:
            self.committed.append(text)

        self._rows = []
        for marker, rows in self.results.items():
            if marker in text:
                self._rows = list(rows(params) if callable(rows) else rows)
                break

    def fetchone(self) -> tuple | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[tuple]:
        return list(self._rows)

    def statements_like(self, marker: str) -> list[str]:
        return [text for text in self.executed if marker in text]

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


class FakeConnection:
    def __init__(self, cursor: FakeCursor):
        self._cursor = cursor
        self.autocommit = False
        self.closed = False

    def cursor(self) -> FakeCursor:
        return self._cursor

    def close(self) -> None:
        self.closed = True


class FakePool:
    """Stands in for PostgresConnectionPool; hands out one FakeConnection."""

    def __init__(self, cursor: FakeCursor):
        self.connection = FakeConnection(cursor)
        self.close_calls = 0

    @contextmanager
    def acquire(self):
        yield self.connection

    def close(self) -> None:
        self.close_calls += 1


def catalog_results(tables: dict[str, list[str]], row_count: int = 3) -> dict[str, Callable]:
    """FakeCursor results answering table/column lookups from ``tables``."""

    def lookup_table(params: tuple) -> list[tuple]:
        _, requested, _ = params
        exact = [name for name in tables if name == requested]
        folded = [name for name in tables if name.lower() == requested.lower()]
        return [(name,) for name in (exact or folded)[:1]]

    def lookup_columns(params: tuple) -> list[tuple]:
        _, table = params
        return [(column,) for column in tables.get(table, [])]

    return {
        "information_schema.tables": lookup_table,
        "information_schema.columns": lookup_columns,
        "count(*)": [(row_count,)],
    }


@pytest.fixture
def fake_cursor_factory() -> Callable[..., FakeCursor]:
    return FakeCursor


@pytest.fixture
def fake_pool_factory() -> Callable[[FakeCursor], FakePool]:
    return FakePool


PLAIN_DUMP = """--
-- PostgreSQL database dump
--

-- Dumped from database version 16.4
-- Dumped by pg_dump version 17.0

SET statement_timeout = 0;
SET transaction_timeout = 0;
SET client_encoding = 'UTF8';
SELECT pg_catalog.set_config('search_path', '', false);

CREATE TABLE public.users (
    id integer NOT NULL,
    first_name text,
    email text
);

COPY public.users (id, first_name, email) FROM stdin;
1\tAlice\talice@example.com
2\tBob\tbob@example.com
\\.

INSERT INTO public.notes VALUES (1, 'it''s
multi-line; still open');

SELECT pg_catalog.setval('public.users_id_seq', 2, true);

ALTER TABLE ONLY public.users
    ADD CONSTRAINT users_pkey PRIMARY KEY (id);
"""


@pytest.fixture
def plain_dump(tmp_path: Path) -> Path:
    """A small plain-format dump with COPY, INSERT and setval statements."""
    path = tmp_path / "sample.sql"
    path.write_text(PLAIN_DUMP, encoding="utf-8")
    return path


@pytest.fixture
def archive_dump(tmp_path: Path) -> Path:
    """A file starting with the custom-format archive magic."""
    path = tmp_path / "sample.dump"
    path.write_bytes(b"PGDMP\x01\x0e\x00binary-content")
    return path


@pytest.fixture
def rules_file(tmp_path: Path) -> Path:
    path = tmp_path / "rules.yaml"
    path.write_text(
        "users:\n"
        "  masks:\n"
        "    first_name: anon.fake_first_name()\n"
        "    email: anon.partial_email(email)\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture(autouse=True)
def clear_anon_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Run every test against default settings."""
    for key in list(os.environ):
        if key.startswith("ANON_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def catalog() -> Callable[..., dict[str, Callable]]:
    return catalog_results


@pytest.fixture
def render() -> Callable[[Any], str]:
    return render_sql


@pytest.fixture
def fake_connection_factory() -> Callable[[FakeCursor], FakeConnection]:
    return FakeConnection
