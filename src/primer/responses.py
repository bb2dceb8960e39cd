"""Responses returned by :class:`primer.application.SetupApp` endpoints."""

from __future__ import annotations

from typing import Any, Iterable

import msgspec
from msgspec import structs

from .exceptions import HTTPError
from .http import Status
from .serialization import json_encode

Headers = tuple[tuple[str, str], ...]

JSON_CONTENT_TYPE: Headers = (("content-type", "application/json"),)

# Sent with every response unless an endpoint already set the header.
DEFAULT_SECURITY_HEADERS: Headers = (
    ("cache-control", "no-store"),
    ("content-security-policy", "default-src 'none'; frame-ancestors 'none'"),
    ("referrer-policy", "no-referrer"),
    ("x-content-type-options", "nosniff"),
    ("x-frame-options", "DENY"),
)


class Response(msgspec.Struct, frozen=True):
    status: int = int(Status.OK)
    headers: Headers = ()
    body: bytes = b""

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        return next((value for key, value in self.headers if key.lower() == wanted), None)

    def secured(self) -> "Response":
        """Return a copy carrying any missing :data:`DEFAULT_SECURITY_HEADERS`."""

        present = {key.lower() for key, _ in self.headers}
        missing = tuple(pair for pair in DEFAULT_SECURITY_HEADERS if pair[0] not in present)
        return structs.replace(self, headers=self.headers + missing) if missing else self


def JSONResponse(data: Any, *, status: int = int(Status.OK), headers: Iterable[tuple[str, str]] = ()) -> Response:
    return Response(status, JSON_CONTENT_TYPE + tuple(headers), json_encode(data)).secured()


def EmptyResponse(status: int = int(Status.NO_CONTENT)) -> Response:
    return Response(status).secured()


def exception_to_response(exc: HTTPError) -> Response:
    return Response(exc.status, JSON_CONTENT_TYPE, exc.to_response_body()).secured()


__all__ = [
    "DEFAULT_SECURITY_HEADERS",
    "EmptyResponse",
    "JSONResponse",
    "Response",
    "exception_to_response",
]
