"""Shared fakes for psycopg async connections."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest


class FakeTransaction:
    """Mimics psycopg's async transaction context manager (savepoint)."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False  # don't suppress exceptions


class FakeCursor:
    """Async cursor whose fetch results are scripted in call order."""

    def __init__(self, rows: list[Any] | None = None, fetchall: list[Any] | None = None):
        self.execute = AsyncMock()
        self.fetchone = AsyncMock(side_effect=list(rows or []))
        self.fetchall = AsyncMock(side_effect=list(fetchall or []))
        self.rowcount = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False

    def statements(self) -> list[str]:
        return [" ".join(str(c.args[0]).split()) for c in self.execute.call_args_list]


def make_conn(cursor: FakeCursor | None = None) -> AsyncMock:
    conn = AsyncMock()
    conn.transaction = MagicMock(side_effect=lambda *a, **kw: FakeTransaction())
    conn.execute = AsyncMock()
    conn.commit = AsyncMock()
    conn.rollback = AsyncMock()
    fake_cursor = cursor or FakeCursor()
    conn.cursor = MagicMock(return_value=fake_cursor)
    conn._fake_cursor = fake_cursor  # expose for assertions
    return conn


@pytest.fixture
def fake_conn():
    """Factory: ``fake_conn(rows=[...], fetchall=[...])`` builds a scripted connection."""

    def _build(rows: list[Any] | None = None, fetchall: list[Any] | None = None) -> AsyncMock:
        return make_conn(FakeCursor(rows=rows, fetchall=fetchall))

    return _build
