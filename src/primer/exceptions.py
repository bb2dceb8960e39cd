"""Error types raised by Primer."""

from __future__ import annotations

from typing import Any, ClassVar

from .serialization import json_encode


class PrimerError(Exception):
    """Base error type."""


class ConfigurationError(PrimerError):
    """Raised when process configuration cannot be loaded."""


class HTTPError(PrimerError):
    """Structured HTTP error that is msgspec serializable."""

    def __init__(self, status: int, detail: Any) -> None:
        super().__init__(status, detail)
        self.status = status
        self.detail = detail

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "detail": self.detail}})


class SetupError(HTTPError):
    """Failure with a stable machine readable ``code``."""

    code: ClassVar[str] = "SETUP_FAILED"
    status_code: ClassVar[int] = 500
    message: ClassVar[str] = "setup failed"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        detail: dict[str, Any] = {"message": message or self.message, **context}
        super().__init__(self.status_code, detail)
        self.context = context

    def __str__(self) -> str:
        return f"{self.code}: {self.detail['message']}"

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "code": self.code, "detail": self.detail}})


class InstallLockedError(SetupError):
    code = "INSTALL_LOCK_ACTIVE"
    message = "setup is disabled by the installation lock"


class SettingsAlreadyInitializedError(SetupError):
    code = "SETTINGS_ALREADY_INIT"
    message = "settings are already initialized"


class SettingsNotInitializedError(SetupError):
    """The settings singleton does not exist yet."""

    code = "SETTINGS_NOT_INIT"
    message = "settings are not initialized"


class MissingEmailError(SetupError):
    code = "EMAIL_REQUIRED"
    status_code = 400
    message = "an email address is required"


class InvalidUsernameError(SetupError):
    code = "USERNAME_INVALID"
    status_code = 400
    message = "username is invalid"


class UsernameTakenError(InvalidUsernameError):
    code = "USERNAME_IN_USE"
    message = "username is already in use"


class InvalidPasswordError(SetupError):
    code = "PASSWORD_INVALID"
    status_code = 400
    message = "password is invalid"


class InvalidSettingsError(SetupError):
    code = "SETTINGS_INVALID"
    status_code = 400
    message = "settings are invalid"


class DuplicateEmailError(SetupError):
    code = "EMAIL_IN_USE"
    status_code = 400
    message = "email address is already in use"


class UserNotFoundError(SetupError):
    code = "USER_NOT_FOUND"
    status_code = 404
    message = "user not found"


__all__ = [
    "ConfigurationError",
    "DuplicateEmailError",
    "HTTPError",
    "InstallLockedError",
    "InvalidPasswordError",
    "InvalidSettingsError",
    "InvalidUsernameError",
    "MissingEmailError",
    "PrimerError",
    "SettingsAlreadyInitializedError",
    "SettingsNotInitializedError",
    "SetupError",
    "UserNotFoundError",
    "UsernameTakenError",
]
