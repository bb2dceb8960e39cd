from __future__ import annotations

from pathlib import Path

import pytest

from primer.config import AppConfig, load_config
from primer.exceptions import ConfigurationError


def test_defaults_without_environment() -> None:
    config = load_config(env={})

    assert config == AppConfig()
    assert config.install_lock is False
    assert config.database is None


def test_environment_values_are_parsed() -> None:
    config = load_config(
        env={
            "PRIMER_INSTALL_LOCK": "true",
            "PRIMER_DATABASE_URL": "postgres://primer@db/primer",
            "PRIMER_DATABASE_SCHEMA": "talk",
            "PRIMER_SECRET": "pepper",
            "PRIMER_PASSWORD_MIN_LENGTH": "12",
            "PRIMER_BANNED_USERNAMES": "Admin, root,,",
            "PRIMER_LOG_LEVEL": "debug",
        }
    )

    assert config.install_lock is True
    assert config.database is not None
    assert config.database.pool.dsn == "postgres://primer@db/primer"
    assert config.database.schema == "talk"
    assert config.database.search_path == ("talk", "public")
    assert config.secret == "pepper"
    assert config.password_min_length == 12
    assert config.banned_usernames == ("admin", "root")
    assert config.log_level == "DEBUG"


def test_file_variants_take_precedence(tmp_path: Path) -> None:
    secret = tmp_path / "secret"
    secret.write_text("from-file\n", encoding="utf-8")

    config = load_config(env={"PRIMER_SECRET": "inline", "PRIMER_SECRET_FILE": str(secret)})

    assert config.secret == "from-file"


def test_missing_file_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        load_config(env={"PRIMER_DATABASE_URL_FILE": str(tmp_path / "absent")})


def test_invalid_values_are_configuration_errors() -> None:
    with pytest.raises(ConfigurationError, match="Invalid environment configuration"):
        load_config(env={"PRIMER_PASSWORD_MIN_LENGTH": "eight"})


def test_lock_flag_is_read_once(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PRIMER_INSTALL_LOCK", "1")
    config = load_config()
    monkeypatch.setenv("PRIMER_INSTALL_LOCK", "0")

    assert config.install_lock is True
