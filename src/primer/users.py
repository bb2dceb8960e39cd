"""Local user accounts."""

from __future__ import annotations

import datetime as dt
import logging
import re
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from .authentication import PasswordHasher
from .exceptions import (
    DuplicateEmailError,
    InvalidPasswordError,
    InvalidUsernameError,
    UsernameTakenError,
    UserNotFoundError,
)
from .orm import ORM, DatabaseModel, model, utcnow

if TYPE_CHECKING:
    from .installation import SetupContext

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")
USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 20


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MODERATOR = "MODERATOR"
    STAFF = "STAFF"
    COMMENTER = "COMMENTER"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BANNED = "BANNED"


@model(
    table="users",
    unique=("lowercase_username", "email"),
    redacted_fields=("hashed_password", "password_salt"),
)
class User(DatabaseModel):
    username: str
    lowercase_username: str
    email: str
    hashed_password: str
    password_salt: str = ""
    role: UserRole = UserRole.COMMENTER
    status: UserStatus = UserStatus.ACTIVE
    email_confirmed_at: dt.datetime | None = None

    @property
    def email_confirmed(self) -> bool:
        return self.email_confirmed_at is not None


class UsersService:
    """Create and administer local accounts."""

    def __init__(
        self,
        orm: ORM,
        hasher: PasswordHasher,
        *,
        password_min_length: int = 8,
        banned_usernames: Iterable[str] = (),
    ) -> None:
        self._users = orm.manager(User)
        self.hasher = hasher
        self.password_min_length = password_min_length
        self.banned_usernames = frozenset(word.lower() for word in banned_usernames)

    async def is_valid_username(self, username: str, strict: bool = True) -> None:
        """Raise :class:`InvalidUsernameError` when ``username`` is unusable.

        The format is always checked. ``strict`` adds the banned word list and
        an availability lookup, both of which need a migrated database.
        """

        if not isinstance(username, str) or not username:
            raise InvalidUsernameError("a username is required")
        if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
            raise InvalidUsernameError(
                f"username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
            )
        if not USERNAME_PATTERN.match(username):
            raise InvalidUsernameError("username may only contain letters, numbers and underscores")
        if not strict:
            return
        lowered = username.lower()
        if any(word in lowered for word in self.banned_usernames):
            raise InvalidUsernameError("username contains a banned word")
        if await self._users.exists(lowercase_username=lowered):
            raise UsernameTakenError()

    async def is_valid_password(self, password: str) -> None:
        if not isinstance(password, str) or len(password) < self.password_min_length:
            raise InvalidPasswordError(
                f"password must be at least {self.password_min_length} characters",
                min_length=self.password_min_length,
            )

    async def create_local_user(
        self,
        context: "SetupContext",
        email: str,
        password: str,
        username: str,
    ) -> User:
        """Create a commenter account backed by a local password."""

        email = email.strip().lower()
        await self.is_valid_username(username, strict=False)
        await self.is_valid_password(password)
        if await self._users.exists(email=email):
            raise DuplicateEmailError()
        if await self._users.exists(lowercase_username=username.lower()):
            raise UsernameTakenError()
        hashed, salt = await self.hasher.hash(password)
        user = await self._users.create(
            User(
                username=username,
                lowercase_username=username.lower(),
                email=email,
                hashed_password=hashed,
                password_salt=salt,
            )
        )
        logger.info("created local user %s via %s", user.id, context.origin)
        return user

    async def set_role(self, user_id: str, role: UserRole) -> User:
        updated = await self._users.update({"role": role}, id=user_id)
        if not updated:
            raise UserNotFoundError(user_id=user_id)
        return updated[0]

    async def confirm_email(self, user_id: str, email: str) -> User:
        updated = await self._users.update(
            {"email_confirmed_at": utcnow()},
            id=user_id,
            email=email.strip().lower(),
        )
        if not updated:
            raise UserNotFoundError(user_id=user_id)
        return updated[0]


__all__ = ["User", "UserRole", "UserStatus", "UsersService"]
