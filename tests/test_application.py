from __future__ import annotations

from typing import Any, Mapping

import pytest

from primer.application import SETUP_PATH, SetupApp
from primer.config import AppConfig
from primer.responses import DEFAULT_SECURITY_HEADERS
from primer.serialization import json_decode
from primer.testing import TestClient, response_json
from primer.users import UserRole
from tests.support import FakePool, build_harness, make_database

VALID_BODY: dict[str, Any] = {
    "settings": {"organization_name": "Example News"},
    "user": {"email": "a@b.com", "username": "admin", "password": "Str0ngPW!"},
}


@pytest.mark.asyncio
async def test_availability_returns_no_content() -> None:
    harness = build_harness()

    async with TestClient(SetupApp(harness.service)) as client:
        response = await client.get()

    assert response.status == 204
    assert response.body == b""
    for name, value in DEFAULT_SECURITY_HEADERS:
        assert response.header(name) == value


@pytest.mark.asyncio
async def test_availability_reports_locked_instance() -> None:
    harness = build_harness(install_lock=True)

    async with TestClient(SetupApp(harness.service)) as client:
        response = await client.get()

    assert response.status == 500
    assert response_json(response)["error"]["code"] == "INSTALL_LOCK_ACTIVE"


@pytest.mark.asyncio
async def test_post_performs_setup() -> None:
    harness = build_harness()

    async with TestClient(SetupApp(harness.service)) as client:
        response = await client.post(json=VALID_BODY, headers={"X-Request-ID": "req-42"})
        again = await client.post(json=VALID_BODY)

    assert response.status == 201
    assert response.header("content-type") == "application/json"
    payload = response_json(response)
    assert payload["settings"]["organization_name"] == "Example News"
    assert payload["user"]["role"] == UserRole.ADMIN.value
    assert payload["user"]["email_confirmed_at"] is not None
    assert "hashed_password" not in payload["user"]
    assert harness.service.last_attempt is not None
    assert again.status == 500
    assert response_json(again)["error"]["code"] == "SETTINGS_ALREADY_INIT"


@pytest.mark.asyncio
async def test_post_records_request_context() -> None:
    harness = build_harness()
    app = SetupApp(harness.service)

    async with TestClient(app, client="10.0.0.7") as client:
        await client.post(json=VALID_BODY, headers={"X-Request-ID": "req-42"})

    attempt = harness.service.last_attempt
    assert attempt is not None
    assert attempt.context.origin == "http"
    assert attempt.context.remote_addr == "10.0.0.7"
    assert attempt.context.request_id == "req-42"


@pytest.mark.asyncio
async def test_validation_errors_are_bad_requests() -> None:
    harness = build_harness()
    body = {**VALID_BODY, "user": {**VALID_BODY["user"], "email": ""}}

    async with TestClient(SetupApp(harness.service)) as client:
        response = await client.post(json=body)

    assert response.status == 400
    error = response_json(response)["error"]
    assert error == {"status": 400, "code": "EMAIL_REQUIRED", "detail": {"message": "an email address is required"}}
    assert harness.log == []


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [b"{not json", b"[1, 2]", b'{"user": "admin"}'])
async def test_malformed_bodies_are_rejected(content: bytes) -> None:
    harness = build_harness()

    async with TestClient(SetupApp(harness.service)) as client:
        response = await client.post(content=content)

    assert response.status == 400
    assert response_json(response)["error"]["detail"]["detail"] == "invalid_body"
    assert harness.log == []


@pytest.mark.asyncio
async def test_unknown_paths_and_methods() -> None:
    app = SetupApp(build_harness().service)

    async with TestClient(app) as client:
        missing = await client.get("/api/v1/teardown")
        wrong_method = await client.request("DELETE")
        trailing = await client.get(SETUP_PATH + "/")

    assert missing.status == 404
    assert wrong_method.status == 405
    assert trailing.status == 204


@pytest.mark.asyncio
async def test_unexpected_errors_propagate() -> None:
    error = ConnectionError("database unavailable")
    harness = build_harness(failures={"settings.is_initialized": error})

    async with TestClient(SetupApp(harness.service)) as client:
        with pytest.raises(ConnectionError) as excinfo:
            await client.get()

    assert excinfo.value is error


@pytest.mark.asyncio
async def test_lifecycle_hooks_run() -> None:
    events: list[str] = []
    app = SetupApp(build_harness().service)

    @app.on_startup
    async def started() -> None:
        events.append("startup")

    @app.on_shutdown
    def stopped() -> None:
        events.append("shutdown")

    async with TestClient(app):
        events.append("request")

    assert events == ["startup", "request", "shutdown"]


@pytest.mark.asyncio
async def test_from_config_manages_database_pool() -> None:
    database = make_database()
    app = SetupApp.from_config(AppConfig(install_lock=True), database=database)
    pool = database._pool
    assert isinstance(pool, FakePool)

    async with TestClient(app) as client:
        response = await client.get()

    assert response.status == 500
    assert pool.closed


def test_from_config_requires_database() -> None:
    with pytest.raises(ValueError):
        SetupApp.from_config(AppConfig())


class _ASGIHarness:
    def __init__(self, messages: list[Mapping[str, Any]]) -> None:
        self._messages = list(messages)
        self.sent: list[Mapping[str, Any]] = []

    async def receive(self) -> Mapping[str, Any]:
        return self._messages.pop(0)

    async def send(self, message: Mapping[str, Any]) -> None:
        self.sent.append(message)


def _http_scope(method: str, path: str = SETUP_PATH) -> dict[str, Any]:
    return {
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(b"content-type", b"application/json")],
        "client": ("192.0.2.1", 5000),
    }


@pytest.mark.asyncio
async def test_asgi_post_streams_body() -> None:
    harness = build_harness()
    app = SetupApp(harness.service)
    body = b'{"settings": {"organization_name": "Example News"}, '
    rest = b'"user": {"email": "a@b.com", "username": "admin", "password": "Str0ngPW!"}}'
    asgi = _ASGIHarness(
        [
            {"type": "http.request", "body": body, "more_body": True},
            {"type": "http.request", "body": rest, "more_body": False},
        ]
    )

    await app(_http_scope("POST"), asgi.receive, asgi.send)

    start, body_message = asgi.sent
    assert start["status"] == 201
    assert (b"content-type", b"application/json") in start["headers"]
    assert json_decode(body_message["body"])["user"]["role"] == "ADMIN"
    assert harness.service.last_attempt is not None
    assert harness.service.last_attempt.context.remote_addr == "192.0.2.1"


@pytest.mark.asyncio
async def test_asgi_rejects_oversized_bodies() -> None:
    harness = build_harness()
    app = SetupApp(harness.service, max_request_body_bytes=16)
    asgi = _ASGIHarness([{"type": "http.request", "body": b"x" * 17, "more_body": False}])

    await app(_http_scope("POST"), asgi.receive, asgi.send)

    assert asgi.sent[0]["status"] == 413
    assert harness.log == []


@pytest.mark.asyncio
async def test_asgi_lifespan() -> None:
    events: list[str] = []
    app = SetupApp(build_harness().service)
    app.on_startup(lambda: events.append("startup"))
    app.on_shutdown(lambda: events.append("shutdown"))
    asgi = _ASGIHarness([{"type": "lifespan.startup"}, {"type": "lifespan.shutdown"}])

    await app({"type": "lifespan"}, asgi.receive, asgi.send)

    assert events == ["startup", "shutdown"]
    assert [message["type"] for message in asgi.sent] == [
        "lifespan.startup.complete",
        "lifespan.shutdown.complete",
    ]


@pytest.mark.asyncio
async def test_asgi_rejects_websocket_scope() -> None:
    app = SetupApp(build_harness().service)
    asgi = _ASGIHarness([])

    with pytest.raises(RuntimeError):
        await app({"type": "websocket"}, asgi.receive, asgi.send)
