"""Minimal declarative mapping between msgspec structs and PostgreSQL tables.

Only what the setup flow needs is supported: single table inserts (optionally
as an upsert on the identity columns), equality filtered selects and updates,
and a ``to_regclass`` probe used to tell a fresh database from a migrated one.
"""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, Mapping, Sequence, TypeVar, get_type_hints

import msgspec
from msgspec.inspect import NODEFAULT, StructType, type_info

from .database import Database, qualified_table, quote_identifier

M = TypeVar("M", bound="Model")


class Model(msgspec.Struct, frozen=True, omit_defaults=True, kw_only=True):
    """Base class for persisted records."""


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def generate_id() -> str:
    return str(uuid.uuid4())


class DatabaseModel(Model, kw_only=True):
    """Record with a string primary key and audit timestamps."""

    id: str = msgspec.field(default_factory=generate_id)
    created_at: dt.datetime = msgspec.field(default_factory=utcnow)
    updated_at: dt.datetime = msgspec.field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class Column:
    """One struct field and the column backing it."""

    name: str
    sql_name: str
    python_type: Any
    required: bool
    default: Any = msgspec.UNSET
    default_factory: Callable[[], Any] | None = None

    @property
    def quoted(self) -> str:
        return quote_identifier(self.sql_name)


@dataclass(slots=True, frozen=True)
class Table(Generic[M]):
    """Mapping metadata attached to a model by :func:`model`."""

    model: type[M]
    name: str
    columns: tuple[Column, ...]
    identity: tuple[str, ...] = ("id",)
    unique: tuple[str, ...] = ()
    redacted: frozenset[str] = field(default_factory=frozenset)

    def column(self, name: str) -> Column:
        for column in self.columns:
            if column.name == name:
                return column
        raise LookupError(f"Unknown field '{name}' for model {self.model.__name__}")

    def qualified(self, schema: str) -> str:
        return qualified_table(schema, self.name)

    def projection(self) -> str:
        return ", ".join(
            column.quoted if column.sql_name == column.name else f"{column.quoted} AS {quote_identifier(column.name)}"
            for column in self.columns
        )

    def row(self, instance: M) -> list[Any]:
        """Return column values for ``instance``; defaults are included."""

        return [msgspec.to_builtins(getattr(instance, column.name)) for column in self.columns]


class ModelRegistry:
    """Lookup of :class:`Table` metadata by model class."""

    def __init__(self) -> None:
        self._tables: dict[type[Model], Table[Any]] = {}

    def register(self, table: Table[Any]) -> None:
        if table.model in self._tables:
            raise ValueError(f"Model {table.model.__name__} already registered")
        self._tables[table.model] = table

    def table_for(self, model: type[M]) -> Table[M]:
        try:
            return self._tables[model]
        except KeyError as exc:
            raise LookupError(f"Model {model.__name__} is not registered") from exc

    def __iter__(self) -> Iterator[Table[Any]]:
        return iter(self._tables.values())


_registry = ModelRegistry()


def default_registry() -> ModelRegistry:
    return _registry


def model(
    *,
    table: str,
    identity: Sequence[str] = ("id",),
    unique: Sequence[str] = (),
    redacted_fields: Sequence[str] = (),
    registry: ModelRegistry | None = None,
) -> Callable[[type[M]], type[M]]:
    """Register ``cls`` as the row type of ``table``."""

    def decorator(cls: type[M]) -> type[M]:
        metadata = Table(
            model=cls,
            name=table,
            columns=_columns_of(cls),
            identity=tuple(identity),
            unique=tuple(unique),
            redacted=frozenset(redacted_fields),
        )
        for name in (*metadata.identity, *metadata.unique, *metadata.redacted):
            metadata.column(name)
        cls.__table__ = metadata  # type: ignore[attr-defined]
        (registry or _registry).register(metadata)
        return cls

    return decorator


def table_of(value: Any) -> Table[Any] | None:
    """Return mapping metadata for a model class or instance, if any."""

    return getattr(value, "__table__", None)


def _columns_of(cls: type[Model]) -> tuple[Column, ...]:
    info = type_info(cls)
    if not isinstance(info, StructType):
        raise TypeError(f"Model {cls!r} is not a msgspec.Struct")
    hints = get_type_hints(cls, include_extras=True)
    return tuple(
        Column(
            name=item.name,
            sql_name=item.encode_name,
            python_type=hints.get(item.name, Any),
            required=item.required,
            default=msgspec.UNSET if item.default is NODEFAULT else item.default,
            default_factory=None if item.default_factory is NODEFAULT else item.default_factory,
        )
        for item in info.fields
    )


class _Params:
    """Positional ``$n`` parameter accumulator."""

    def __init__(self) -> None:
        self.values: list[Any] = []

    def bind(self, value: Any) -> str:
        self.values.append(msgspec.to_builtins(value))
        return f"${len(self.values)}"

    def assignments(self, table: Table[Any], values: Mapping[str, Any], *, separator: str) -> str:
        return separator.join(f"{table.column(name).quoted} = {self.bind(value)}" for name, value in values.items())


class ORM:
    """Execute mapped statements against a :class:`Database`."""

    def __init__(self, database: Database, registry: ModelRegistry | None = None) -> None:
        self.database = database
        self.registry = registry or _registry

    @property
    def schema(self) -> str:
        return self.database.config.schema

    def manager(self, model: type[M]) -> "ModelManager[M]":
        return ModelManager(self, self.registry.table_for(model))

    async def table_exists(self, model: type[Model]) -> bool:
        table = self.registry.table_for(model)
        async with self.database.connection() as connection:
            present = await connection.fetch_value(
                "SELECT to_regclass($1) IS NOT NULL AS present",
                [table.qualified(self.schema)],
            )
        return bool(present)

    async def insert(self, model: type[M], data: M | Mapping[str, Any], *, upsert: bool = False) -> M:
        """Insert ``data``; with ``upsert`` an identity clash overwrites the row."""

        table = self.registry.table_for(model)
        instance = data if isinstance(data, table.model) else msgspec.convert(data, type=table.model)
        columns = [column.quoted for column in table.columns]
        params = _Params()
        placeholders = ", ".join(params.bind(value) for value in table.row(instance))
        sql = f"INSERT INTO {table.qualified(self.schema)} ({', '.join(columns)}) VALUES ({placeholders})"
        if upsert:
            sql += " " + _on_conflict(table)
        rows = await self._fetch(f"{sql} RETURNING {table.projection()}", params)
        if not rows:
            raise RuntimeError(f"INSERT into {table.name} returned no rows")
        return msgspec.convert(rows[0], type=table.model)

    async def select(
        self,
        model: type[M],
        *,
        filters: Mapping[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[M]:
        table = self.registry.table_for(model)
        params = _Params()
        sql = f"SELECT {table.projection()} FROM {table.qualified(self.schema)}"
        if filters:
            sql += " WHERE " + params.assignments(table, filters, separator=" AND ")
        if limit is not None:
            sql += f" LIMIT {params.bind(limit)}"
        return [msgspec.convert(row, type=table.model) for row in await self._fetch(sql, params)]

    async def update(self, model: type[M], values: Mapping[str, Any], *, filters: Mapping[str, Any]) -> list[M]:
        """Apply ``values`` to matching rows, bumping ``updated_at``, and return them."""

        table = self.registry.table_for(model)
        changes = dict(values)
        if any(column.name == "updated_at" for column in table.columns):
            changes["updated_at"] = utcnow()
        params = _Params()
        sql = f"UPDATE {table.qualified(self.schema)} SET " + params.assignments(table, changes, separator=", ")
        sql += " WHERE " + params.assignments(table, filters, separator=" AND ")
        rows = await self._fetch(f"{sql} RETURNING {table.projection()}", params)
        return [msgspec.convert(row, type=table.model) for row in rows]

    async def _fetch(self, sql: str, params: _Params) -> list[dict[str, Any]]:
        async with self.database.connection() as connection:
            return await connection.fetch_all(sql, params.values)


def _on_conflict(table: Table[Any]) -> str:
    keys = [table.column(name).quoted for name in table.identity]
    preserved = {*table.identity, "created_at"}
    updates = [f"{c.quoted} = EXCLUDED.{c.quoted}" for c in table.columns if c.name not in preserved]
    target = ", ".join(keys)
    if not updates:
        return f"ON CONFLICT ({target}) DO NOTHING"
    return f"ON CONFLICT ({target}) DO UPDATE SET {', '.join(updates)}"


class ModelManager(Generic[M]):
    """:class:`ORM` operations bound to one model."""

    def __init__(self, orm: ORM, table: Table[M]) -> None:
        self._orm = orm
        self.table = table

    async def create(self, data: M | Mapping[str, Any]) -> M:
        return await self._orm.insert(self.table.model, data)

    async def upsert(self, data: M | Mapping[str, Any]) -> M:
        return await self._orm.insert(self.table.model, data, upsert=True)

    async def get(self, **filters: Any) -> M | None:
        rows = await self._orm.select(self.table.model, filters=filters, limit=1)
        return rows[0] if rows else None

    async def exists(self, **filters: Any) -> bool:
        return await self.get(**filters) is not None

    async def update(self, values: Mapping[str, Any], **filters: Any) -> list[M]:
        return await self._orm.update(self.table.model, values, filters=filters)


__all__ = [
    "ORM",
    "Column",
    "DatabaseModel",
    "Model",
    "ModelManager",
    "ModelRegistry",
    "Table",
    "default_registry",
    "generate_id",
    "model",
    "table_of",
    "utcnow",
]
