"""Connection pooling for PostgreSQL through :mod:`psqlpy`.

Every connection handed out by :meth:`Database.connection` has its
``search_path`` pinned first, so unqualified names resolve inside the
configured schema.
"""

from __future__ import annotations

import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

import msgspec
from msgspec import structs
from psqlpy import ConnectionPool

Row = dict[str, Any]
PoolFactory = Callable[..., Any]


class DatabaseError(RuntimeError):
    """The driver returned something Primer cannot interpret."""


class PoolConfig(msgspec.Struct, frozen=True):
    """Keyword arguments for :class:`psqlpy.ConnectionPool`; ``None`` values are not passed."""

    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    db_name: str | None = None
    username: str | None = None
    password: str | None = None
    application_name: str | None = "primer"
    max_db_pool_size: int = 4
    connect_timeout_sec: int | None = None

    def options(self) -> dict[str, Any]:
        return {key: value for key, value in structs.asdict(self).items() if value is not None}


class DatabaseConfig(msgspec.Struct, frozen=True):
    pool: PoolConfig = PoolConfig()
    schema: str = "public"
    search_path: tuple[str, ...] = ("public",)


def quote_identifier(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def qualified_table(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def _rows(result: Any) -> list[Row]:
    payload = result.result() if hasattr(result, "result") else result
    if payload is None:
        return []
    if isinstance(payload, Mapping):
        return [dict(payload)]
    if isinstance(payload, list):
        return [dict(item) for item in payload]
    raise DatabaseError(f"Unexpected query result type: {type(payload)!r}")


class DatabaseConnection:
    """A pooled driver connection with row oriented helpers."""

    def __init__(self, raw: Any) -> None:
        self._raw = raw

    async def execute(self, query: str, parameters: Sequence[Any] | None = None) -> list[Row]:
        args = None if parameters is None else list(parameters)
        return _rows(await self._raw.execute(query, args))

    async def fetch_all(self, query: str, parameters: Sequence[Any] | None = None) -> list[Row]:
        return await self.execute(query, parameters)

    async def fetch_one(self, query: str, parameters: Sequence[Any] | None = None) -> Row | None:
        rows = await self.execute(query, parameters)
        return rows[0] if rows else None

    async def fetch_value(self, query: str, parameters: Sequence[Any] | None = None) -> Any:
        row = await self.fetch_one(query, parameters)
        return next(iter(row.values()), None) if row else None

    async def set_search_path(self, schemas: Sequence[str]) -> None:
        await self.execute("SET search_path TO " + ", ".join(map(quote_identifier, schemas)))


class Database:
    """Owns the connection pool for one PostgreSQL database."""

    def __init__(
        self,
        config: DatabaseConfig,
        *,
        pool: Any | None = None,
        pool_factory: PoolFactory = ConnectionPool,
    ) -> None:
        self.config = config
        self._pool = pool
        self._pool_factory = pool_factory

    @property
    def pool(self) -> Any:
        if self._pool is None:
            self._pool = self._pool_factory(**self.config.pool.options())
        return self._pool

    async def startup(self) -> None:
        """Create the pool now rather than on first use."""

        if self._pool is None:
            self._pool = self._pool_factory(**self.config.pool.options())

    async def shutdown(self) -> None:
        pool, self._pool = self._pool, None
        if pool is None or not hasattr(pool, "close"):
            return
        closing = pool.close()
        if inspect.isawaitable(closing):
            await closing

    @asynccontextmanager
    async def connection(self, *, schema: str | None = None) -> AsyncIterator[DatabaseConnection]:
        primary = schema or self.config.schema
        path = [primary, *(entry for entry in self.config.search_path if entry != primary)]
        async with self.pool.acquire() as raw:
            connection = DatabaseConnection(raw)
            await connection.set_search_path(list(dict.fromkeys(path)))
            yield connection


__all__ = [
    "Database",
    "DatabaseConfig",
    "DatabaseConnection",
    "DatabaseError",
    "PoolConfig",
    "qualified_table",
    "quote_identifier",
]
