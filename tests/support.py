"""Test support utilities for Primer database and setup tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Sequence

from msgspec import structs

from primer.database import Database, DatabaseConfig, PoolConfig
from primer.exceptions import (
    InvalidPasswordError,
    InvalidUsernameError,
    SettingsNotInitializedError,
    UserNotFoundError,
)
from primer.installation import SetupContext, SetupInput, SetupService, SetupUserInput
from primer.migrations import Migration
from primer.orm import utcnow
from primer.settings import Settings
from primer.users import USERNAME_PATTERN, User, UserRole


@dataclass
class FakeResult:
    rows: List[dict[str, Any]]

    def result(self) -> List[dict[str, Any]]:
        return self.rows


class FakeConnection:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, list[Any]]] = []
        self._queued: list[list[dict[str, Any]]] = []

    def queue_result(self, rows: Iterable[dict[str, Any]]) -> None:
        self._queued.append([dict(row) for row in rows])

    async def execute(self, query: str, parameters: Sequence[Any] | None = None) -> FakeResult:
        params = list(parameters or [])
        self.calls.append(("execute", query, params))
        if query.lstrip().upper().startswith("SET "):
            return FakeResult([])
        rows = self._queued.pop(0) if self._queued else []
        return FakeResult(rows)

    def queries(self) -> list[str]:
        """Return executed statements other than ``SET search_path``."""

        return [query for _, query, _ in self.calls if not query.lstrip().upper().startswith("SET ")]


class _Acquire:
    def __init__(self, connection: FakeConnection) -> None:
        self._connection = connection

    async def __aenter__(self) -> FakeConnection:
        return self._connection

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class FakePool:
    def __init__(self, connection: FakeConnection | None = None) -> None:
        self.connection = connection or FakeConnection()
        self.closed = False

    def acquire(self) -> _Acquire:
        return _Acquire(self.connection)

    def close(self) -> None:
        self.closed = True


def make_database(connection: FakeConnection | None = None, *, schema: str = "public") -> Database:
    pool = FakePool(connection)
    config = DatabaseConfig(pool=PoolConfig(dsn="postgres://primer@localhost/primer"), schema=schema)
    return Database(config, pool=pool)


class FakeHasher:
    """Deterministic stand-in for :class:`primer.authentication.PasswordHasher`."""

    async def hash(self, password: str) -> tuple[str, str]:
        return f"hashed:{password}", "salt"


class _Recorder:
    """Append each call to a shared log and optionally fail or stall it."""

    def __init__(
        self,
        log: list[str],
        *,
        failures: Mapping[str, BaseException] | None = None,
        delays: Mapping[str, float] | None = None,
    ) -> None:
        self.log = log
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.finished: list[str] = []
        self.cancelled: list[str] = []

    async def _record(self, name: str) -> None:
        self.log.append(name)
        delay = self.delays.get(name)
        if delay is not None:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self.cancelled.append(name)
                raise
        error = self.failures.get(name)
        if error is not None:
            raise error
        self.finished.append(name)


class InMemorySettingsStore(_Recorder):
    def __init__(self, log: list[str], *, initialized: bool = False, **kwargs: Any) -> None:
        super().__init__(log, **kwargs)
        self.settings: Settings | None = Settings(organization_name="Existing") if initialized else None

    async def is_initialized(self) -> bool:
        await self._record("settings.is_initialized")
        return self.settings is not None

    async def select(self) -> Settings:
        await self._record("settings.select")
        if self.settings is None:
            raise SettingsNotInitializedError()
        return self.settings

    async def update(self, settings: Settings) -> Settings:
        await self._record("settings.update")
        self.settings = settings
        return settings


class InMemoryAccountStore(_Recorder):
    def __init__(self, log: list[str], *, password_min_length: int = 8, **kwargs: Any) -> None:
        super().__init__(log, **kwargs)
        self.password_min_length = password_min_length
        self.users: dict[str, User] = {}
        self.strict_checks: list[bool] = []

    async def is_valid_username(self, username: str, strict: bool = True) -> None:
        self.strict_checks.append(strict)
        await self._record("users.is_valid_username")
        if not isinstance(username, str) or not 2 <= len(username) <= 20 or not USERNAME_PATTERN.match(username):
            raise InvalidUsernameError()

    async def is_valid_password(self, password: str) -> None:
        await self._record("users.is_valid_password")
        if not isinstance(password, str) or len(password) < self.password_min_length:
            raise InvalidPasswordError(min_length=self.password_min_length)

    async def create_local_user(self, context: SetupContext, email: str, password: str, username: str) -> User:
        await self._record("users.create_local_user")
        user = User(
            username=username,
            lowercase_username=username.lower(),
            email=email.strip().lower(),
            hashed_password=f"hashed:{password}",
            password_salt="salt",
        )
        self.users[user.id] = user
        return user

    async def set_role(self, user_id: str, role: UserRole) -> User:
        await self._record("users.set_role")
        return self._replace(user_id, role=role)

    async def confirm_email(self, user_id: str, email: str) -> User:
        await self._record("users.confirm_email")
        return self._replace(user_id, email_confirmed_at=utcnow())

    def _replace(self, user_id: str, **changes: Any) -> User:
        try:
            user = self.users[user_id]
        except KeyError as exc:
            raise UserNotFoundError(user_id=user_id) from exc
        updated = structs.replace(user, **changes)
        self.users[user_id] = updated
        return updated


class InMemoryMigrations(_Recorder):
    def __init__(
        self,
        log: list[str],
        *,
        names: Sequence[str] = ("0001_create_settings", "0002_create_users"),
        **kwargs: Any,
    ) -> None:
        super().__init__(log, **kwargs)
        self.available = [Migration(name=name, operations=()) for name in names]
        self.applied: list[str] = []
        self.received: list[list[str]] = []

    async def list_pending(self) -> list[Migration]:
        await self._record("migrations.list_pending")
        return [migration for migration in self.available if migration.name not in self.applied]

    async def run(self, migrations: Sequence[Migration]) -> list[str]:
        self.received.append([migration.name for migration in migrations])
        await self._record("migrations.run")
        executed = []
        for migration in migrations:
            self.applied.append(migration.name)
            executed.append(migration.name)
        return executed


@dataclass
class SetupHarness:
    """A :class:`SetupService` wired to recording in-memory collaborators."""

    service: SetupService
    settings: InMemorySettingsStore
    users: InMemoryAccountStore
    migrations: InMemoryMigrations
    log: list[str] = field(default_factory=list)

    def store_calls(self) -> list[str]:
        """Return logged calls that reached a store or the migration runner."""

        return [name for name in self.log if not name.startswith("users.is_valid_")]


def build_harness(
    *,
    install_lock: bool = False,
    initialized: bool = False,
    failures: Mapping[str, BaseException] | None = None,
    delays: Mapping[str, float] | None = None,
) -> SetupHarness:
    log: list[str] = []
    options = {"failures": failures, "delays": delays}
    settings = InMemorySettingsStore(log, initialized=initialized, **options)
    users = InMemoryAccountStore(log, **options)
    migrations = InMemoryMigrations(log, **options)
    service = SetupService(settings=settings, users=users, migrations=migrations, install_lock=install_lock)
    return SetupHarness(service=service, settings=settings, users=users, migrations=migrations, log=log)


def setup_input(
    *,
    email: str | None = "a@b.com",
    username: str | None = "admin",
    password: str | None = "Str0ngPW!",
    **settings: Any,
) -> SetupInput:
    payload = {"organization_name": "Example News", **settings}
    return SetupInput(settings=payload, user=SetupUserInput(email=email, username=username, password=password))
