"""Incoming request wrapper."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar, overload

import msgspec

from .exceptions import HTTPError
from .http import Status
from .serialization import json_decode

T = TypeVar("T")

_EMPTY = object()


class Request:
    __slots__ = ("client", "content", "headers", "method", "path", "path_params", "_decoded")

    def __init__(
        self,
        *,
        method: str,
        path: str,
        headers: Mapping[str, str] | None = None,
        path_params: Mapping[str, str] | None = None,
        body: bytes | None = None,
        client: str | None = None,
    ) -> None:
        self.method = method.upper()
        self.path = path
        self.headers = {name.lower(): value for name, value in (headers or {}).items()}
        self.path_params = dict(path_params or {})
        self.content = body or b""
        self.client = client
        self._decoded: Any = _EMPTY

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @overload
    async def json(self) -> Any: ...

    @overload
    async def json(self, model: type[T]) -> T: ...

    async def json(self, model: Any = None) -> Any:
        """Decode the body once, converting into ``model`` when given.

        Undecodable or non-conforming bodies raise ``400 Bad Request``.
        """

        try:
            if self._decoded is _EMPTY:
                self._decoded = json_decode(self.content) if self.content else None
            if model is None:
                return self._decoded
            return msgspec.convert(self._decoded if self._decoded is not None else {}, type=model)
        except (msgspec.DecodeError, msgspec.ValidationError) as exc:
            raise HTTPError(Status.BAD_REQUEST, {"detail": "invalid_body", "message": str(exc)}) from exc
