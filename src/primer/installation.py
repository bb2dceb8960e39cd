"""One-time instance setup.

:class:`SetupService` is the single entry point used by both the HTTP setup
endpoint and ``primer setup``. A setup attempt moves through
:class:`SetupState` strictly in order::

    VALIDATING -> CHECKING_AVAILABILITY -> MIGRATING -> PERSISTING
        -> CREATING_ACCOUNT -> FINALIZING -> COMPLETE

and stops in ``ABORTED`` on the first failure, which is re-raised unchanged.
Completed side effects are never compensated: migrations stay applied, the
settings row stays written and a created account stays in place. An attempt
that aborts after side effects began reports ``partially_set_up``.

Availability is a read-then-decide check. Two concurrent attempts can both
pass it; the primary key on the settings singleton is what keeps the second
writer from creating another configuration row.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Mapping, Protocol, Sequence, TypeVar

import msgspec
from msgspec import structs

from .authentication import PasswordHasher
from .config import AppConfig
from .database import Database
from .exceptions import InstallLockedError, MissingEmailError, SettingsAlreadyInitializedError
from .migrations import Migration, MigrationRunner, default_migrations
from .orm import ORM
from .settings import Settings, SettingsService, SettingsValue
from .users import User, UserRole, UsersService

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECENT_ATTEMPTS = 32


class InstallationStatus(str, Enum):
    LOCKED = "locked"
    ALREADY_INITIALIZED = "already_initialized"
    AVAILABLE = "available"


class SetupState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    CHECKING_AVAILABILITY = "checking_availability"
    MIGRATING = "migrating"
    PERSISTING = "persisting"
    CREATING_ACCOUNT = "creating_account"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ABORTED = "aborted"


_SIDE_EFFECT_STATES = frozenset(
    {SetupState.MIGRATING, SetupState.PERSISTING, SetupState.CREATING_ACCOUNT, SetupState.FINALIZING}
)

_PARTIAL_NOTES: Mapping[SetupState, str] = {
    SetupState.MIGRATING: "setup aborted while migrating; migrations applied before the failure remain applied",
    SetupState.PERSISTING: "setup aborted after migrations were applied; settings may not have been persisted",
    SetupState.CREATING_ACCOUNT: "setup aborted after settings were persisted; no administrator account exists",
    SetupState.FINALIZING: (
        "setup aborted after the administrator account was created; it may lack the ADMIN role "
        "or a confirmed email"
    ),
}


class SettingsStore(Protocol):
    async def is_initialized(self) -> bool: ...

    async def select(self) -> Settings: ...

    async def update(self, settings: Settings) -> Settings: ...


class AccountStore(Protocol):
    async def is_valid_username(self, username: str, strict: bool = True) -> None: ...

    async def is_valid_password(self, password: str) -> None: ...

    async def create_local_user(self, context: "SetupContext", email: str, password: str, username: str) -> User: ...

    async def set_role(self, user_id: str, role: UserRole) -> User: ...

    async def confirm_email(self, user_id: str, email: str) -> User: ...


class MigrationSource(Protocol):
    async def list_pending(self) -> Sequence[Migration]: ...

    async def run(self, migrations: Sequence[Migration]) -> Sequence[str]: ...


class SetupContext(msgspec.Struct, frozen=True):
    """Who triggered a setup attempt."""

    origin: str = "cli"
    remote_addr: str | None = None
    request_id: str = msgspec.field(default_factory=lambda: uuid.uuid4().hex)


class SetupUserInput(msgspec.Struct, frozen=True):
    email: str | None = None
    username: str | None = None
    password: str | None = None


class SetupInput(msgspec.Struct, frozen=True):
    settings: dict[str, Any] = msgspec.field(default_factory=dict)
    user: SetupUserInput = SetupUserInput()


class SetupResult(msgspec.Struct, frozen=True):
    settings: Settings
    user: User


@dataclass(slots=True)
class SetupAttempt:
    """State trail of a single :meth:`SetupService.setup` call."""

    context: SetupContext
    state: SetupState = SetupState.PENDING
    trail: list[SetupState] = field(default_factory=list)
    failed_state: SetupState | None = None
    error: BaseException | None = None
    user_id: str | None = None
    started_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    def advance(self, state: SetupState) -> None:
        logger.debug("setup %s: %s -> %s", self.context.request_id, self.state.value, state.value)
        self.state = state
        self.trail.append(state)

    def abort(self, error: BaseException) -> None:
        self.failed_state = self.state
        self.error = error
        self.advance(SetupState.ABORTED)

    @property
    def partially_set_up(self) -> bool:
        return self.failed_state in _SIDE_EFFECT_STATES


async def _join(*operations: Coroutine[Any, Any, T]) -> list[T]:
    """Await ``operations`` concurrently and fail fast.

    The first failure cancels the remaining operations and is re-raised as
    the original exception rather than an exception group. It is raised
    outside the ``except`` block so its ``__cause__`` and ``__context__``
    stay as the operation left them.
    """

    tasks: list[asyncio.Task[T]] = []
    failure: BaseException | None = None
    try:
        async with asyncio.TaskGroup() as group:
            for operation in operations:
                tasks.append(group.create_task(operation))
    except ExceptionGroup as exc:
        failure = exc.exceptions[0]
    if failure is not None:
        raise failure
    return [task.result() for task in tasks]


class InstallationGate:
    """Decide whether setup may run."""

    def __init__(self, *, install_lock: bool, settings: SettingsStore) -> None:
        self._install_lock = bool(install_lock)
        self._settings = settings

    @property
    def locked(self) -> bool:
        return self._install_lock

    async def status(self) -> InstallationStatus:
        if self._install_lock:
            return InstallationStatus.LOCKED
        if await self._settings.is_initialized():
            return InstallationStatus.ALREADY_INITIALIZED
        return InstallationStatus.AVAILABLE

    async def ensure_available(self) -> None:
        status = await self.status()
        if status is InstallationStatus.LOCKED:
            raise InstallLockedError()
        if status is InstallationStatus.ALREADY_INITIALIZED:
            raise SettingsAlreadyInitializedError()


class InputValidator:
    """Validate a :class:`SetupInput` before anything is written."""

    def __init__(
        self,
        users: AccountStore,
        *,
        settings_value: Callable[[Any], SettingsValue] = SettingsValue,
    ) -> None:
        self._users = users
        self._settings_value = settings_value

    async def validate(self, payload: SetupInput) -> Settings:
        email = payload.user.email
        if not isinstance(email, str) or not email.strip():
            raise MissingEmailError()
        # The schema may not exist yet, so the username is checked without lookups.
        _, _, settings = await _join(
            self._users.is_valid_username(payload.user.username, False),
            self._users.is_valid_password(payload.user.password),
            self._settings_value(payload.settings).validate(),
        )
        return settings


class SetupService:
    """Bootstrap an uninitialized instance."""

    def __init__(
        self,
        *,
        settings: SettingsStore,
        users: AccountStore,
        migrations: MigrationSource,
        install_lock: bool = False,
        validator: InputValidator | None = None,
    ) -> None:
        self._settings = settings
        self._users = users
        self._migrations = migrations
        self.gate = InstallationGate(install_lock=install_lock, settings=settings)
        self.validator = validator or InputValidator(users)
        # Attempts are shared by every caller of this service. `last_attempt` is the
        # most recently started one; concurrent callers look theirs up by request id.
        self.last_attempt: SetupAttempt | None = None
        self.attempts: dict[str, SetupAttempt] = {}

    @classmethod
    def from_config(cls, config: AppConfig, *, database: Database) -> "SetupService":
        orm = ORM(database)
        users = UsersService(
            orm,
            PasswordHasher(secret_key=config.secret),
            password_min_length=config.password_min_length,
            banned_usernames=config.banned_usernames,
        )
        return cls(
            settings=SettingsService(orm),
            users=users,
            migrations=MigrationRunner(database, migrations=default_migrations()),
            install_lock=config.install_lock,
        )

    async def status(self) -> InstallationStatus:
        return await self.gate.status()

    async def is_available(self) -> None:
        await self.gate.ensure_available()

    async def validate(self, payload: SetupInput) -> Settings:
        return await self.validator.validate(payload)

    async def current_settings(self) -> Settings:
        """Return the stored settings; raises :class:`SettingsNotInitializedError` before setup."""

        return await self._settings.select()

    async def setup(self, context: SetupContext, payload: SetupInput) -> SetupResult:
        attempt = SetupAttempt(context=context)
        self._remember(attempt)
        try:
            return await self._run(attempt, payload)
        except BaseException as exc:
            # Cancellation after side effects began leaves the same partial state as a failure.
            attempt.abort(exc)
            if attempt.partially_set_up:
                note = _PARTIAL_NOTES[attempt.failed_state]  # type: ignore[index]
                exc.add_note(note)
                logger.error("setup %s partially applied: %s (%r)", context.request_id, note, exc)
            else:
                state = attempt.failed_state.value if attempt.failed_state else "unknown"
                logger.info("setup %s rejected during %s: %r", context.request_id, state, exc)
            raise

    def _remember(self, attempt: SetupAttempt) -> None:
        self.last_attempt = attempt
        self.attempts[attempt.context.request_id] = attempt
        while len(self.attempts) > RECENT_ATTEMPTS:
            del self.attempts[next(iter(self.attempts))]

    async def _run(self, attempt: SetupAttempt, payload: SetupInput) -> SetupResult:
        attempt.advance(SetupState.VALIDATING)
        if self.gate.locked:
            raise InstallLockedError()
        settings = await self.validator.validate(payload)

        attempt.advance(SetupState.CHECKING_AVAILABILITY)
        await self.gate.ensure_available()

        attempt.advance(SetupState.MIGRATING)
        pending = await self._migrations.list_pending()
        await self._migrations.run(pending)

        attempt.advance(SetupState.PERSISTING)
        persisted = await self._settings.update(settings)

        attempt.advance(SetupState.CREATING_ACCOUNT)
        account = payload.user
        user = await self._users.create_local_user(
            attempt.context,
            account.email.strip(),  # type: ignore[union-attr]
            account.password,  # type: ignore[arg-type]
            account.username,  # type: ignore[arg-type]
        )
        attempt.user_id = user.id

        attempt.advance(SetupState.FINALIZING)
        promoted, confirmed = await _join(
            self._users.set_role(user.id, UserRole.ADMIN),
            self._users.confirm_email(user.id, user.email),
        )
        user = structs.replace(user, role=promoted.role, email_confirmed_at=confirmed.email_confirmed_at)

        attempt.advance(SetupState.COMPLETE)
        logger.info("setup %s complete; administrator %s created", attempt.context.request_id, user.id)
        return SetupResult(settings=persisted, user=user)


__all__ = [
    "AccountStore",
    "InputValidator",
    "InstallationGate",
    "InstallationStatus",
    "MigrationSource",
    "SettingsStore",
    "SetupAttempt",
    "SetupContext",
    "SetupInput",
    "SetupResult",
    "SetupService",
    "SetupState",
    "SetupUserInput",
]
