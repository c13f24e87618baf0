from __future__ import annotations

import asyncio

import bcrypt

from namecard.core.config import get_settings


# Precomputed lazily so unknown-user logins still pay one bcrypt verify.
_dummy_hash: bytes | None = None


def _hash_sync(password: str, rounds: int) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def _verify_sync(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash counts as a mismatch.
        return False


async def hash_password(password: str, *, rounds: int | None = None) -> str:
    # bcrypt is CPU-bound; keep it off the event loop.
    rounds = rounds or get_settings().password_hash_rounds
    return await asyncio.to_thread(_hash_sync, password, rounds)


async def verify_password(password: str, password_hash: str) -> bool:
    return await asyncio.to_thread(_verify_sync, password, password_hash)


async def burn_verify(password: str) -> None:
    # Spend the same work as a real verify when the account does not exist.
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = (await hash_password("namecard-dummy-password")).encode("utf-8")
    await verify_password(password, _dummy_hash.decode("utf-8"))
