from __future__ import annotations

import pytest

from primer.authentication import PasswordHasher


def _hasher(secret_key: str = "pepper") -> PasswordHasher:
    return PasswordHasher(secret_key=secret_key, time_cost=1, memory_cost=1024, parallelism=1)


@pytest.mark.asyncio
async def test_hash_is_argon2id_and_reproducible_with_salt() -> None:
    hasher = _hasher()

    hashed, salt = await hasher.hash("Str0ngPW!")

    assert hashed.startswith("$argon2id$")
    assert "Str0ngPW!" not in hashed
    assert await hasher.hash("Str0ngPW!", salt=salt) == (hashed, salt)
    assert (await hasher.hash("wrong", salt=salt))[0] != hashed


@pytest.mark.asyncio
async def test_salts_are_unique_per_hash() -> None:
    hasher = _hasher()

    first = await hasher.hash("Str0ngPW!")
    second = await hasher.hash("Str0ngPW!")

    assert first[1] != second[1]
    assert first[0] != second[0]


@pytest.mark.asyncio
async def test_secret_key_binds_hashes() -> None:
    hashed, salt = await _hasher("pepper").hash("Str0ngPW!")

    other, _ = await _hasher("other").hash("Str0ngPW!", salt=salt)

    assert other != hashed
