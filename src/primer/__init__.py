"""Primer one-time instance setup service."""

from .application import SETUP_PATH, SetupApp
from .authentication import PasswordHasher
from .config import AppConfig, load_config
from .database import Database, DatabaseConfig, PoolConfig
from .exceptions import (
    ConfigurationError,
    DuplicateEmailError,
    HTTPError,
    InstallLockedError,
    InvalidPasswordError,
    InvalidSettingsError,
    InvalidUsernameError,
    MissingEmailError,
    PrimerError,
    SettingsAlreadyInitializedError,
    SettingsNotInitializedError,
    SetupError,
    UsernameTakenError,
    UserNotFoundError,
)
from .installation import (
    InputValidator,
    InstallationGate,
    InstallationStatus,
    SetupAttempt,
    SetupContext,
    SetupInput,
    SetupResult,
    SetupService,
    SetupState,
    SetupUserInput,
)
from .migrations import Migration, MigrationRunner, default_migrations
from .orm import ORM, Model, ModelManager, ModelRegistry, default_registry, model
from .settings import ModerationMode, Settings, SettingsService, SettingsValue
from .testing import TestClient
from .users import User, UserRole, UsersService, UserStatus

__all__ = [
    "ORM",
    "SETUP_PATH",
    "AppConfig",
    "ConfigurationError",
    "Database",
    "DatabaseConfig",
    "DuplicateEmailError",
    "HTTPError",
    "InputValidator",
    "InstallLockedError",
    "InstallationGate",
    "InstallationStatus",
    "InvalidPasswordError",
    "InvalidSettingsError",
    "InvalidUsernameError",
    "Migration",
    "MigrationRunner",
    "MissingEmailError",
    "Model",
    "ModelManager",
    "ModelRegistry",
    "ModerationMode",
    "PasswordHasher",
    "PoolConfig",
    "PrimerError",
    "Settings",
    "SettingsAlreadyInitializedError",
    "SettingsNotInitializedError",
    "SettingsService",
    "SettingsValue",
    "SetupApp",
    "SetupAttempt",
    "SetupContext",
    "SetupError",
    "SetupInput",
    "SetupResult",
    "SetupService",
    "SetupState",
    "SetupUserInput",
    "TestClient",
    "User",
    "UserNotFoundError",
    "UserRole",
    "UserStatus",
    "UsernameTakenError",
    "UsersService",
    "default_migrations",
    "default_registry",
    "load_config",
    "model",
]
