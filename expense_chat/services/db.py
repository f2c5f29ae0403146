"""
Database access for the chat pipeline - pooled async engine, query timeout and
connection-string resolution.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from expense_chat.config import (
    CONNECTION_ENV_KEYS,
    DB_CONNECT_TIMEOUT_S,
    DB_POOL_RECYCLE_S,
    DB_POOL_SIZE,
    DB_QUERY_TIMEOUT_S,
)
from expense_chat.services.runtime import log_event

logger = logging.getLogger("db")

SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})


class DatabaseConfigError(RuntimeError):
    """Raised when no usable connection string is configured"""


class QueryTimeoutError(Exception):
    """Raised when a query exceeds the timeout limit"""


def resolve_database_url(env: Optional[Mapping[str, str]] = None) -> Tuple[str, str]:
    """Return (url, env_key). DATABASE_URL wins; legacy keys still work but warn."""
    source = os.environ if env is None else env
    for key in CONNECTION_ENV_KEYS:
        value = (source.get(key) or "").strip()
        if not value:
            continue
        if key != "DATABASE_URL":
            logger.warning("db_url_legacy_env key=%s prefer=DATABASE_URL", key)
        return value, key
    raise DatabaseConfigError("DATABASE_URL is not configured")


@dataclass
class DatabaseConfig:
    """Database connection configuration"""
    url: str
    pool_size: int = DB_POOL_SIZE
    pool_recycle: int = DB_POOL_RECYCLE_S
    connect_timeout: float = DB_CONNECT_TIMEOUT_S
    query_timeout: float = DB_QUERY_TIMEOUT_S
    ssl_mode: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "DatabaseConfig":
        source = os.environ if env is None else env
        url, _key = resolve_database_url(source)
        ssl_mode = (source.get("PGSSLMODE") or "").strip().lower() or None
        return cls(url=url, ssl_mode=ssl_mode)

    @property
    def async_url(self) -> URL:
        """The configured URL rebound to the asyncpg driver, minus libpq-only query args."""
        url = make_url(self.url)
        return url.set(drivername="postgresql+asyncpg").difference_update_query(["sslmode"])

    @property
    def effective_ssl_mode(self) -> Optional[str]:
        raw = make_url(self.url).query.get("sslmode") or self.ssl_mode
        if isinstance(raw, tuple):
            raw = raw[0] if raw else None
        mode = (raw or "").strip().lower()
        return mode if mode in SSL_MODES else None


def create_engine_with_timeout(config: DatabaseConfig) -> AsyncEngine:
    """
    Create the async engine. Connections are verified before use and recycled
    because hosted Postgres drops idle connections.
    """
    connect_args: Dict[str, Any] = {
        "timeout": config.connect_timeout,
        "command_timeout": config.query_timeout,
    }
    ssl_mode = config.effective_ssl_mode
    if ssl_mode:
        connect_args["ssl"] = ssl_mode
    engine = create_async_engine(
        config.async_url,
        pool_pre_ping=True,
        pool_recycle=config.pool_recycle,
        pool_size=config.pool_size,
        max_overflow=0,
        connect_args=connect_args,
    )
    log_event(logger, logging.INFO, "engine_created", pool_size=config.pool_size, ssl_mode=ssl_mode or "default")
    return engine


class ExpenseStore:
    """Read-only query access; one pooled connection per query."""

    def __init__(self, engine: AsyncEngine, *, query_timeout_s: float = DB_QUERY_TIMEOUT_S):
        self._engine = engine
        self.query_timeout_s = query_timeout_s

    @classmethod
    def from_env(cls) -> "ExpenseStore":
        config = DatabaseConfig.from_env()
        return cls(create_engine_with_timeout(config), query_timeout_s=config.query_timeout)

    async def fetch(self, sql: str, values: Sequence[Any]) -> List[Dict[str, Any]]:
        started = time.perf_counter()
        async with self._engine.connect() as conn:
            try:
                result = await asyncio.wait_for(
                    conn.exec_driver_sql(sql, tuple(values)),
                    timeout=self.query_timeout_s,
                )
            except asyncio.TimeoutError as exc:
                log_event(logger, logging.WARNING, "db_query_timeout", timeout_s=self.query_timeout_s)
                raise QueryTimeoutError(f"Query exceeded {self.query_timeout_s}s") from exc
            rows = [dict(row) for row in result.mappings()]
        log_event(
            logger,
            logging.INFO,
            "db_query_ok",
            rows=len(rows),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return rows

    async def ping(self) -> None:
        async with self._engine.connect() as conn:
            await asyncio.wait_for(conn.execute(text("SELECT 1")), timeout=self.query_timeout_s)

    async def dispose(self) -> None:
        await self._engine.dispose()
