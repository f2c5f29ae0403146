import asyncio
from contextlib import asynccontextmanager

import pytest

from expense_chat.services.db import (
    DatabaseConfig,
    DatabaseConfigError,
    ExpenseStore,
    QueryTimeoutError,
    resolve_database_url,
)


class _FakeResult:
    def __init__(self, rows):
        self._rows = rows

    def mappings(self):
        return self._rows


class _FakeConn:
    def __init__(self, rows, delay):
        self.rows = rows
        self.delay = delay
        self.calls = []

    async def exec_driver_sql(self, sql, params):
        self.calls.append((sql, params))
        await asyncio.sleep(self.delay)
        return _FakeResult(self.rows)


class _FakeEngine:
    def __init__(self, rows=(), delay=0.0):
        self.conn = _FakeConn(list(rows), delay)

    @asynccontextmanager
    async def connect(self):
        yield self.conn


def test_database_url_prefers_database_url():
    env = {"SUPABASE_DB_URL": "postgresql://legacy/db", "DATABASE_URL": "postgresql://main/db"}
    assert resolve_database_url(env) == ("postgresql://main/db", "DATABASE_URL")


def test_legacy_key_still_resolves():
    assert resolve_database_url({"POSTGRES_URL": "postgresql://pg/db"}) == ("postgresql://pg/db", "POSTGRES_URL")


def test_missing_url_is_a_config_error():
    with pytest.raises(DatabaseConfigError):
        resolve_database_url({})


def test_async_url_uses_asyncpg_and_drops_sslmode():
    config = DatabaseConfig.from_env({"DATABASE_URL": "postgresql://u:p@db.example.com:5432/app?sslmode=require"})
    url = config.async_url
    assert url.drivername == "postgresql+asyncpg"
    assert "sslmode" not in url.query
    assert url.host == "db.example.com"
    assert config.effective_ssl_mode == "require"


def test_ssl_mode_from_environment():
    config = DatabaseConfig.from_env({"DATABASE_URL": "postgresql://u:p@db/app", "PGSSLMODE": "Verify-Full"})
    assert config.effective_ssl_mode == "verify-full"
    assert DatabaseConfig(url="postgresql://u:p@db/app", ssl_mode="bogus").effective_ssl_mode is None


def test_fetch_returns_row_dicts():
    engine = _FakeEngine(rows=[{"amount": 1}, {"amount": 2}])
    store = ExpenseStore(engine, query_timeout_s=1.0)
    rows = asyncio.run(store.fetch("SELECT amount FROM ai_expenses WHERE trip_id = $1", ["t1"]))
    assert rows == [{"amount": 1}, {"amount": 2}]
    assert engine.conn.calls == [("SELECT amount FROM ai_expenses WHERE trip_id = $1", ("t1",))]


def test_fetch_times_out():
    store = ExpenseStore(_FakeEngine(delay=1.0), query_timeout_s=0.01)
    with pytest.raises(QueryTimeoutError):
        asyncio.run(store.fetch("SELECT 1", []))
