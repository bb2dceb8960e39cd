"""Schema migrations and the runner that applies them.

Applied units are recorded by name in a tracking table inside the configured
schema. Nothing is rolled back: a failing unit stops the run and every unit
applied before it stays applied and recorded.
"""

from __future__ import annotations

import datetime as dt
import enum
import inspect
import logging
import types
import uuid
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Annotated, Any, Awaitable, Callable, Iterable, Sequence, Union, get_args, get_origin

import msgspec

from .database import Database, DatabaseConnection, qualified_table
from .orm import Column, Model, Table, table_of
from .settings import Settings
from .users import User

logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    """Raised when the migration set cannot be planned."""


Operation = Callable[["MigrationContext"], Awaitable[None] | None]


@dataclass(slots=True)
class MigrationContext:
    database: Database
    connection: DatabaseConnection
    schema: str

    async def execute(self, sql: str, parameters: Sequence[Any] | None = None) -> None:
        await self.connection.execute(sql, list(parameters or []))


@dataclass(slots=True)
class Migration:
    """A named unit of schema change, applied at most once per schema."""

    name: str
    operations: tuple[Operation, ...]
    depends_on: tuple[str, ...] = ()

    async def apply(self, context: MigrationContext) -> None:
        for operation in self.operations:
            outcome = operation(context)
            if inspect.isawaitable(outcome):
                await outcome


class MigrationRunner:
    """Plan and apply :class:`Migration` units against one database."""

    def __init__(
        self,
        database: Database,
        *,
        migrations: Iterable[Migration] | None = None,
        tracking_table: str = "schema_migrations",
    ) -> None:
        self.database = database
        self.tracking_table = tracking_table
        self._units: dict[str, Migration] = {}
        for migration in migrations or ():
            self.add_migration(migration)

    @property
    def schema(self) -> str:
        return self.database.config.schema

    def add_migration(self, migration: Migration) -> None:
        if migration.name in self._units:
            raise MigrationError(f"Migration '{migration.name}' already registered")
        self._units[migration.name] = migration

    def migrations(self) -> tuple[Migration, ...]:
        return tuple(self._units.values())

    async def list_pending(self) -> list[Migration]:
        """Return the units not yet recorded, each after its dependencies."""

        plan = self._plan()
        done = await self._applied_names()
        return [migration for migration in plan if migration.name not in done]

    async def run(self, migrations: Sequence[Migration]) -> list[str]:
        """Apply ``migrations`` in order, skipping recorded units, and return the names applied."""

        if not migrations:
            return []
        done = await self._applied_names()
        applied: list[str] = []
        for migration in migrations:
            if migration.name in done:
                logger.debug("skipping recorded migration %s", migration.name)
                continue
            async with self.database.connection(schema=self.schema) as connection:
                await migration.apply(MigrationContext(self.database, connection, self.schema))
                await connection.execute(
                    f"INSERT INTO {self._ledger()} (migration_name) VALUES ($1) ON CONFLICT DO NOTHING",
                    [migration.name],
                )
            done.add(migration.name)
            applied.append(migration.name)
            logger.info("applied migration %s to schema %s", migration.name, self.schema)
        return applied

    async def run_all(self) -> list[str]:
        return await self.run(await self.list_pending())

    def _plan(self) -> list[Migration]:
        graph: dict[str, tuple[str, ...]] = {}
        for name, migration in self._units.items():
            for dependency in migration.depends_on:
                if dependency not in self._units:
                    raise MigrationError(f"Migration '{name}' depends on unknown migration '{dependency}'")
            graph[name] = migration.depends_on
        try:
            order = list(TopologicalSorter(graph).static_order())
        except CycleError as exc:
            raise MigrationError(f"Migrations {' -> '.join(exc.args[1])} form a dependency cycle") from exc
        return [self._units[name] for name in order]

    def _ledger(self) -> str:
        return qualified_table(self.schema, self.tracking_table)

    async def _applied_names(self) -> set[str]:
        async with self.database.connection() as connection:
            await connection.execute(
                f"CREATE TABLE IF NOT EXISTS {self._ledger()} ("
                "migration_name TEXT PRIMARY KEY, "
                "applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW())"
            )
            rows = await connection.fetch_all(f"SELECT migration_name FROM {self._ledger()}")
        return {row["migration_name"] for row in rows}


def create_table_for_model(model: type[Model]) -> Operation:
    table = table_of(model)
    if table is None:
        raise MigrationError(f"Model {model.__name__} is not registered with @model")

    async def create(context: MigrationContext) -> None:
        await context.execute(build_create_table_statement(context.schema, table))

    return create


def run_sql(statement: str) -> Operation:
    async def execute(context: MigrationContext) -> None:
        await context.execute(statement)

    return execute


def build_create_table_statement(schema: str, table: Table[Any]) -> str:
    lines = [column_definition(column) for column in table.columns]
    if table.identity:
        lines.append(f"PRIMARY KEY ({', '.join(table.column(name).quoted for name in table.identity)})")
    lines.extend(f"UNIQUE ({table.column(name).quoted})" for name in table.unique)
    body = ",\n    ".join(lines)
    return f"CREATE TABLE IF NOT EXISTS {table.qualified(schema)} (\n    {body}\n)"


def column_definition(column: Column) -> str:
    definition = f"{column.quoted} {sql_type_for(column.python_type)}"
    if column.required:
        return definition + " NOT NULL"
    if column.default is not msgspec.UNSET:
        definition += f" DEFAULT {render_literal(column.default)}"
    return definition


_SCALAR_TYPES: dict[Any, str] = {
    str: "TEXT",
    bool: "BOOLEAN",
    int: "BIGINT",
    float: "DOUBLE PRECISION",
    dt.datetime: "TIMESTAMPTZ",
    uuid.UUID: "UUID",
}


def sql_type_for(python_type: Any) -> str:
    """Map a field annotation to a PostgreSQL column type; containers become JSONB."""

    origin = get_origin(python_type)
    if origin is Annotated:
        return sql_type_for(get_args(python_type)[0])
    if origin in (Union, types.UnionType):
        members = [arg for arg in get_args(python_type) if arg is not type(None)]
        return sql_type_for(members[0]) if len(members) == 1 else "JSONB"
    if python_type in _SCALAR_TYPES:
        return _SCALAR_TYPES[python_type]
    if isinstance(python_type, type) and issubclass(python_type, enum.Enum):
        return "TEXT"
    return "JSONB"


def render_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, enum.Enum):
        value = value.value
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (list, tuple, dict, set)):
        return f"'{msgspec.json.encode(value).decode()}'::jsonb"
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


def default_migrations() -> list[Migration]:
    """Return the built-in schema: settings first, then users."""

    return [
        Migration(name="0001_create_settings", operations=(create_table_for_model(Settings),)),
        Migration(
            name="0002_create_users",
            operations=(create_table_for_model(User),),
            depends_on=("0001_create_settings",),
        ),
    ]


__all__ = [
    "Migration",
    "MigrationContext",
    "MigrationError",
    "MigrationRunner",
    "Operation",
    "build_create_table_statement",
    "column_definition",
    "create_table_for_model",
    "default_migrations",
    "render_literal",
    "run_sql",
    "sql_type_for",
]
