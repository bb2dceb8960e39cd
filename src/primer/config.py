"""Process configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import msgspec
from msgspec import Struct

from .database import DatabaseConfig, PoolConfig
from .exceptions import ConfigurationError

ENV_PREFIX = "PRIMER_"


class AppConfig(Struct, frozen=True):
    """Typed configuration for a Primer process.

    ``install_lock`` is read once when the process starts and is handed to the
    setup service explicitly; nothing in the setup path consults the
    environment afterwards.
    """

    install_lock: bool = False
    database: DatabaseConfig | None = None
    secret: str = ""
    password_min_length: int = 8
    banned_usernames: tuple[str, ...] = ()
    log_level: str = "INFO"


class _EnvironmentConfig(Struct, frozen=True):
    install_lock: bool = False
    database_url: str | None = None
    database_schema: str = "public"
    secret: str = ""
    password_min_length: int = 8
    banned_usernames: str = ""
    log_level: str = "INFO"


def _read_env_blob(name: str, env: Mapping[str, str]) -> str | None:
    file_key = f"{name}_FILE"
    path = env.get(file_key)
    if path:
        try:
            return Path(path).read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Configuration file at '{path}' not found") from exc
    value = env.get(name)
    if value:
        return value
    return None


def load_config(*, env: Mapping[str, str] | None = None) -> AppConfig:
    """Build :class:`AppConfig` from ``PRIMER_*`` environment variables."""

    source = os.environ if env is None else env
    raw: dict[str, Any] = {}
    for field in _EnvironmentConfig.__struct_fields__:
        value = _read_env_blob(ENV_PREFIX + field.upper(), source)
        if value is not None:
            raw[field] = value
    try:
        parsed = msgspec.convert(raw, type=_EnvironmentConfig, strict=False)
    except msgspec.ValidationError as exc:
        raise ConfigurationError(f"Invalid environment configuration: {exc}") from exc

    database = None
    if parsed.database_url:
        database = DatabaseConfig(
            pool=PoolConfig(dsn=parsed.database_url),
            schema=parsed.database_schema,
            search_path=(parsed.database_schema, "public"),
        )
    banned = tuple(word.strip().lower() for word in parsed.banned_usernames.split(",") if word.strip())
    return AppConfig(
        install_lock=parsed.install_lock,
        database=database,
        secret=parsed.secret,
        password_min_length=parsed.password_min_length,
        banned_usernames=banned,
        log_level=parsed.log_level.upper(),
    )


__all__ = ["AppConfig", "load_config"]
