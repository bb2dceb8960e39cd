"""ASGI application for the setup endpoint.

``GET /api/v1/setup`` answers ``204`` while setup can still run and the
mapped error otherwise. ``POST`` performs setup and returns the created
settings and administrator.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping

from msgspec import structs

from .config import AppConfig
from .database import Database
from .exceptions import HTTPError
from .http import Status
from .installation import SetupContext, SetupInput, SetupService
from .requests import Request
from .responses import EmptyResponse, JSONResponse, Response, exception_to_response
from .routing import MethodNotAllowed, Router

logger = logging.getLogger(__name__)

SETUP_PATH = "/api/v1/setup"

Hook = Callable[[], Awaitable[None] | None]
Receive = Callable[[], Awaitable[Mapping[str, Any]]]
Send = Callable[[Mapping[str, Any]], Awaitable[None]]

_NOT_FOUND = HTTPError(Status.NOT_FOUND, {"detail": "not_found"})
_WRONG_METHOD = HTTPError(Status.METHOD_NOT_ALLOWED, {"detail": "method_not_allowed"})
_TOO_LARGE = HTTPError(Status.PAYLOAD_TOO_LARGE, {"detail": "body_too_large"})


def _scope_headers(scope: Mapping[str, Any]) -> dict[str, str]:
    return {name.decode("latin-1").lower(): value.decode("latin-1") for name, value in scope.get("headers", ())}


def _wire_headers(response: Response) -> list[tuple[bytes, bytes]]:
    return [(name.encode("latin-1"), value.encode("latin-1")) for name, value in response.headers]


class SetupApp:
    def __init__(self, service: SetupService, *, max_request_body_bytes: int = 65_536) -> None:
        self.service = service
        self.max_request_body_bytes = max_request_body_bytes
        self.router = Router()
        self.router.add_route(SETUP_PATH, methods=["GET"], endpoint=self.availability, name="setup.status")
        self.router.add_route(SETUP_PATH, methods=["POST"], endpoint=self.perform_setup, name="setup.perform")
        self._hooks: dict[str, list[Hook]] = {"startup": [], "shutdown": []}

    @classmethod
    def from_config(cls, config: AppConfig, *, database: Database | None = None) -> "SetupApp":
        """Build the app with its own pool, opened and closed with the app lifespan."""

        if database is None:
            if config.database is None:
                raise ValueError("A database configuration is required to serve the setup endpoint")
            database = Database(config.database)
        app = cls(SetupService.from_config(config, database=database))
        app.on_startup(database.startup)
        app.on_shutdown(database.shutdown)
        return app

    async def availability(self, request: Request) -> Response:
        await self.service.is_available()
        return EmptyResponse()

    async def perform_setup(self, request: Request) -> Response:
        payload = await request.json(SetupInput)
        context = SetupContext(origin="http", remote_addr=request.client)
        if request_id := request.header("x-request-id"):
            context = structs.replace(context, request_id=request_id)
        result = await self.service.setup(context, payload)
        return JSONResponse(result, status=int(Status.CREATED))

    def on_startup(self, func: Hook) -> Hook:
        self._hooks["startup"].append(func)
        return func

    def on_shutdown(self, func: Hook) -> Hook:
        self._hooks["shutdown"].append(func)
        return func

    async def startup(self) -> None:
        await self._run_hooks("startup")

    async def shutdown(self) -> None:
        await self._run_hooks("shutdown")

    async def _run_hooks(self, phase: str) -> None:
        for hook in self._hooks[phase]:
            outcome = hook()
            if inspect.isawaitable(outcome):
                await outcome

    async def dispatch(
        self,
        method: str,
        path: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        client: str | None = None,
    ) -> Response:
        """Route one request and turn :class:`HTTPError` into a response.

        Any other exception is logged and re-raised to the server.
        """

        try:
            match = self.router.find(method, path)
        except MethodNotAllowed:
            return exception_to_response(_WRONG_METHOD)
        except LookupError:
            return exception_to_response(_NOT_FOUND)
        request = Request(method=method, path=path, headers=headers, path_params=match.params, body=body, client=client)
        try:
            return await match.route.endpoint(request)
        except HTTPError as exc:
            return exception_to_response(exc)
        except Exception:
            logger.exception("unhandled error serving %s %s", method, path)
            raise

    async def __call__(self, scope: Mapping[str, Any], receive: Receive, send: Send) -> None:
        kind = scope.get("type")
        if kind == "lifespan":
            await self._lifespan(receive, send)
        elif kind == "http":
            await self._http(scope, receive, send)
        else:
            raise RuntimeError(f"unsupported ASGI scope type {kind!r}")

    async def _http(self, scope: Mapping[str, Any], receive: Receive, send: Send) -> None:
        body = await self._read_body(receive)
        if body is None:
            response = exception_to_response(_TOO_LARGE)
        else:
            peer = scope.get("client")
            response = await self.dispatch(
                scope["method"],
                scope["path"],
                headers=_scope_headers(scope),
                body=body,
                client=peer[0] if peer else None,
            )
        await send({"type": "http.response.start", "status": response.status, "headers": _wire_headers(response)})
        await send({"type": "http.response.body", "body": response.body})

    async def _read_body(self, receive: Receive) -> bytes | None:
        """Collect the streamed body, or ``None`` once it exceeds the size limit."""

        chunks = bytearray()
        more = True
        while more:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
            if message["type"] != "http.request":
                continue
            chunks += message.get("body", b"")
            if len(chunks) > self.max_request_body_bytes:
                return None
            more = message.get("more_body", False)
        return bytes(chunks)

    async def _lifespan(self, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                await self.startup()
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                await self.shutdown()
                await send({"type": "lifespan.shutdown.complete"})
                break


__all__ = ["SETUP_PATH", "SetupApp"]
