"""Method and path dispatch backed by :mod:`rure` regular expressions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

import rure

if TYPE_CHECKING:
    from .requests import Request
    from .responses import Response

Endpoint = Callable[["Request"], Awaitable["Response"]]


class MethodNotAllowed(LookupError):
    """The path exists but not for the requested method."""


def _translate(template: str) -> tuple[str, tuple[str, ...]]:
    """Turn ``/users/{user_id}`` into an anchored regex and its parameter names."""

    names: list[str] = []
    segments: list[str] = []
    for segment in template.strip("/").split("/"):
        if segment.startswith("{") and segment.endswith("}"):
            names.append(segment[1:-1])
            segments.append(f"(?P<{segment[1:-1]}>[^/]+)")
        else:
            segments.append(segment)
    body = "/".join(segment for segment in segments if segment)
    return f"^/{body}/?$" if body else "^/$", tuple(names)


@dataclass(slots=True)
class Route:
    path: str
    methods: frozenset[str]
    endpoint: Endpoint
    name: str | None = None
    param_names: tuple[str, ...] = field(init=False)
    _regex: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        pattern, self.param_names = _translate(self.path)
        self._regex = rure.compile(pattern)

    def capture(self, path: str) -> dict[str, str] | None:
        found = self._regex.match(path)
        if found is None:
            return None
        values = ((name, found.group(name)) for name in self.param_names)
        return {name: value for name, value in values if value is not None}


@dataclass(slots=True)
class RouteMatch:
    route: Route
    params: dict[str, str]


class Router:
    def __init__(self) -> None:
        self.routes: list[Route] = []

    def add_route(
        self,
        path: str,
        *,
        methods: Iterable[str],
        endpoint: Endpoint,
        name: str | None = None,
    ) -> Route:
        route = Route(path, frozenset(method.upper() for method in methods), endpoint, name)
        self.routes.append(route)
        return route

    def find(self, method: str, path: str) -> RouteMatch:
        """Return the first route accepting ``method`` on ``path``.

        Raises :class:`MethodNotAllowed` when only other methods match the
        path and a plain :class:`LookupError` when nothing does.
        """

        verb = method.upper()
        allowed: set[str] = set()
        for route in self.routes:
            params = route.capture(path)
            if params is None:
                continue
            if verb in route.methods:
                return RouteMatch(route, params)
            allowed |= route.methods
        if allowed:
            raise MethodNotAllowed(f"{verb} not allowed for {path}; use {', '.join(sorted(allowed))}")
        raise LookupError(f"no route for {verb} {path}")


__all__ = ["MethodNotAllowed", "Route", "RouteMatch", "Router"]
