"""Argon2id password hashing for local accounts.

Salts are stored beside the hash. The configured secret key is mixed into
every salt, so a leaked users table cannot be attacked without it.
"""

from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass

from argon2 import low_level

__all__ = ["PasswordHasher"]


@dataclass(frozen=True, slots=True)
class _Cost:
    time: int
    memory: int
    lanes: int


class PasswordHasher:
    """Hashes passwords off the event loop."""

    def __init__(
        self,
        *,
        secret_key: str = "",
        time_cost: int = 3,
        memory_cost: int = 65_536,
        parallelism: int = 2,
    ) -> None:
        self._pepper = secret_key.encode()
        self._cost = _Cost(time=time_cost, memory=memory_cost, lanes=parallelism)

    async def hash(self, password: str, *, salt: str | None = None) -> tuple[str, str]:
        """Return ``(hashed, salt)``; a fresh salt is generated unless one is given."""

        salt = salt or secrets.token_hex(16)
        return await asyncio.to_thread(self._digest, password, salt), salt

    def _digest(self, password: str, salt: str) -> str:
        peppered = hmac.new(self._pepper, salt.encode(), "sha256").digest()
        encoded = low_level.hash_secret(
            password.encode(),
            peppered,
            time_cost=self._cost.time,
            memory_cost=self._cost.memory,
            parallelism=self._cost.lanes,
            hash_len=32,
            type=low_level.Type.ID,
        )
        return encoded.decode("ascii")
