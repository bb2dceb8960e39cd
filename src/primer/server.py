"""Serve :class:`SetupApp` with Granian.

Granian imports its target by dotted path, so the app instance is parked
in this module and handed back through :func:`_current_app_loader`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import msgspec
from granian import Granian

from .application import SetupApp

LOADER_TARGET = "primer.server:_current_app_loader"

_registered: list[SetupApp] = []


class ServerConfig(msgspec.Struct, frozen=True):
    host: str = "127.0.0.1"
    port: int = 3000
    interface: str = "asgi"
    workers: int = 1
    certificate_path: str | None = None
    private_key_path: str | None = None

    def tls_options(self) -> dict[str, Path]:
        """Return Granian's ``ssl_cert``/``ssl_key`` options, or nothing when TLS is off."""

        paths = (self.certificate_path, self.private_key_path)
        if paths == (None, None):
            return {}
        if None in paths:
            raise RuntimeError("TLS requires both a certificate and a private key")
        certificate, key = (Path(path) for path in paths)  # type: ignore[arg-type]
        absent = [str(path) for path in (certificate, key) if not path.exists()]
        if absent:
            raise RuntimeError(f"TLS assets not found: {', '.join(absent)}")
        return {"ssl_cert": certificate, "ssl_key": key}

    def granian_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"address": self.host, "port": self.port}
        options.update(interface=self.interface, workers=self.workers)
        options.update(self.tls_options())
        return options


def _clear_current_app() -> None:
    _registered.clear()


def _current_app_loader() -> SetupApp:
    if not _registered:
        raise RuntimeError("no setup application registered for Granian")
    return _registered[-1]


def create_server(app: SetupApp, config: ServerConfig | None = None) -> Granian:
    options = (config or ServerConfig()).granian_options()
    server = Granian(LOADER_TARGET, **options)
    _registered[:] = [app]
    return server


def run(app: SetupApp, config: ServerConfig | None = None) -> None:
    """Block serving ``app`` until Granian exits."""

    server = create_server(app, config)
    try:
        server.serve(target_loader=_current_app_loader, wrap_loader=False)
    finally:
        _clear_current_app()


__all__ = ["ServerConfig", "create_server", "run"]
