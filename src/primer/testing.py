"""In-process client for exercising :class:`SetupApp` without a server."""

from __future__ import annotations

from typing import Any, Mapping

from .application import SETUP_PATH, SetupApp
from .responses import Response
from .serialization import json_decode, json_encode


class TestClient:
    """Runs the app lifespan around an ``async with`` block."""

    __test__ = False

    def __init__(self, app: SetupApp, *, client: str = "127.0.0.1") -> None:
        self.app = app
        self.client = client

    async def __aenter__(self) -> "TestClient":
        await self.app.startup()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.app.shutdown()

    async def request(
        self,
        method: str,
        path: str = SETUP_PATH,
        *,
        json: Any = None,
        content: bytes = b"",
        headers: Mapping[str, str] | None = None,
    ) -> Response:
        sent = {name.lower(): value for name, value in (headers or {}).items()}
        if json is not None:
            content = json_encode(json)
            sent.setdefault("content-type", "application/json")
        return await self.app.dispatch(method, path, headers=sent, body=content, client=self.client)

    async def get(self, path: str = SETUP_PATH, **kwargs: Any) -> Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str = SETUP_PATH, **kwargs: Any) -> Response:
        return await self.request("POST", path, **kwargs)


def response_json(response: Response) -> Any:
    return json_decode(response.body)
