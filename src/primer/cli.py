"""Command line utilities for Primer."""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from .config import AppConfig, load_config
from .database import Database
from .exceptions import ConfigurationError, SetupError
from .installation import InstallationStatus, SetupContext, SetupInput, SetupService, SetupUserInput
from .migrations import MigrationRunner, default_migrations
from .serialization import json_decode

PROJECT_NAME = "primer"

T = TypeVar("T")


@dataclass(slots=True)
class CLIEnvironment:
    """All dependencies required to execute CLI operations."""

    config: AppConfig
    database: Database
    service: SetupService
    migrations: MigrationRunner


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=(args.log_level or "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=PROJECT_NAME, description="Primer instance bootstrap commands")
    parser.add_argument("--log-level", help="Logging level for diagnostics (defaults to PRIMER_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="Initialize this instance and create the administrator")
    setup.add_argument("--settings-file", type=Path, help="JSON file with the initial settings")
    setup.add_argument("--organization-name", help="Organization name shown to users")
    setup.add_argument("--contact-email", help="Organization contact email")
    setup.add_argument("--email", help="Administrator email")
    setup.add_argument("--username", help="Administrator username")
    setup.add_argument("--password", help="Administrator password (prompted when omitted)")
    setup.add_argument("--defaults", action="store_true", help="Do not prompt for optional settings")
    setup.set_defaults(func=_cmd_setup)

    status = sub.add_parser("status", help="Report whether setup can run")
    status.set_defaults(func=_cmd_status)

    migrate = sub.add_parser("migrate", help="Apply pending database migrations")
    migrate.add_argument("--list", action="store_true", help="Only list pending migrations")
    migrate.set_defaults(func=_cmd_migrate)

    serve = sub.add_parser("serve", help="Serve the setup endpoint")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3000)
    serve.add_argument("--workers", type=int, default=1)
    serve.set_defaults(func=_cmd_serve)

    return parser


def _cmd_setup(args: argparse.Namespace) -> int:
    env = _load_environment(args)

    async def perform() -> int:
        try:
            await env.service.is_available()
        except SetupError as exc:
            _report(exc)
            return 1
        try:
            payload = _collect_input(args)
        except ValueError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        try:
            result = await env.service.setup(SetupContext(origin="cli"), payload)
        except SetupError as exc:
            _report(exc)
            return 1
        print(f"Setup complete: {result.settings.organization_name}")
        print(f"Administrator {result.user.username} <{result.user.email}> ({result.user.id})")
        return 0

    return asyncio.run(_with_database(env, perform))


def _cmd_status(args: argparse.Namespace) -> int:
    env = _load_environment(args)

    async def inspect() -> tuple[InstallationStatus, str | None]:
        status = await env.service.status()
        if status is not InstallationStatus.ALREADY_INITIALIZED:
            return status, None
        return status, (await env.service.current_settings()).organization_name

    status, organization = asyncio.run(_with_database(env, inspect))
    label = status.value.replace("_", " ")
    print(f"{label}: {organization}" if organization else label)
    return 0 if status is InstallationStatus.AVAILABLE else 1


def _cmd_migrate(args: argparse.Namespace) -> int:
    env = _load_environment(args)

    async def perform() -> list[str]:
        pending = await env.migrations.list_pending()
        if args.list:
            return [migration.name for migration in pending]
        return await env.migrations.run(pending)

    names = asyncio.run(_with_database(env, perform))
    if not names:
        print("No pending migrations" if args.list else "No migrations executed")
    for name in names:
        print(f"pending {name}" if args.list else f"applied {name}")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    from .application import SetupApp
    from .server import ServerConfig, run

    env = _load_environment(args)
    app = SetupApp(env.service)
    app.on_startup(env.database.startup)
    app.on_shutdown(env.database.shutdown)
    run(app, ServerConfig(host=args.host, port=args.port, workers=args.workers))
    return 0


def _load_environment(args: argparse.Namespace) -> CLIEnvironment:
    try:
        config = load_config()
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc
    if config.database is None:
        raise SystemExit("PRIMER_DATABASE_URL must be set")
    if args.log_level is None:
        logging.getLogger().setLevel(config.log_level.upper())
    database = Database(config.database)
    return CLIEnvironment(
        config=config,
        database=database,
        service=SetupService.from_config(config, database=database),
        migrations=MigrationRunner(database, migrations=default_migrations()),
    )


async def _with_database(env: CLIEnvironment, operation: Callable[[], Awaitable[T]]) -> T:
    await env.database.startup()
    try:
        return await operation()
    finally:
        await env.database.shutdown()


def _collect_input(args: argparse.Namespace) -> SetupInput:
    settings: dict[str, Any] = {}
    if args.settings_file is not None:
        try:
            loaded = json_decode(args.settings_file.read_bytes())
        except OSError as exc:
            raise ValueError(f"cannot read {args.settings_file}: {exc.strerror}") from exc
        if not isinstance(loaded, dict):
            raise ValueError(f"{args.settings_file} must contain a JSON object")
        settings.update(loaded)
    if args.organization_name:
        settings["organization_name"] = args.organization_name
    if args.contact_email:
        settings["organization_contact_email"] = args.contact_email
    if not settings.get("organization_name"):
        settings["organization_name"] = _prompt("Organization name")
    if not args.defaults and "organization_contact_email" not in settings:
        contact = _prompt("Organization contact email (optional)", required=False)
        if contact:
            settings["organization_contact_email"] = contact

    email = args.email or _prompt("Administrator email")
    username = args.username or _prompt("Administrator username")
    password = args.password
    if password is None:
        password = getpass.getpass("Administrator password: ")
        if getpass.getpass("Confirm password: ") != password:
            raise ValueError("passwords do not match")
    return SetupInput(settings=settings, user=SetupUserInput(email=email, username=username, password=password))


def _prompt(label: str, *, required: bool = True) -> str:
    while True:
        value = input(f"{label}: ").strip()
        if value or not required:
            return value


def _report(exc: SetupError) -> None:
    print(f"error: {exc}", file=sys.stderr)
    for note in getattr(exc, "__notes__", ()):
        print(f"note: {note}", file=sys.stderr)


__all__ = ["main"]
