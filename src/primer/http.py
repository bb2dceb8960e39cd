"""HTTP status codes used by the setup endpoint."""

from __future__ import annotations

from enum import IntEnum


class Status(IntEnum):
    OK = 200
    CREATED = 201
    NO_CONTENT = 204
    BAD_REQUEST = 400
    NOT_FOUND = 404
    METHOD_NOT_ALLOWED = 405
    PAYLOAD_TOO_LARGE = 413
    INTERNAL_SERVER_ERROR = 500


__all__ = ["Status"]
