from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import hashlib
import logging
import time
from typing import Any, AsyncIterator, Callable

from namecard.core.config import get_settings
from namecard.core.errors import ConflictError, ValidationError


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
ANONYMOUS_CALLER = "anonymous"


@dataclass(frozen=True)
class IdempotencyScope:
    # Digest of the presented credential; replay never crosses callers.
    caller: str
    method: str
    path: str
    key: str


@dataclass(frozen=True)
class IdempotencyEntry:
    scope: IdempotencyScope
    request_hash: str
    response: Any
    recorded_at: float
    expires_at: float


def caller_fingerprint(authorization: str | None) -> str:
    # Digest the credential; raw bearer tokens never become cache keys.
    if authorization is None or not authorization.strip():
        return ANONYMOUS_CALLER
    return hashlib.sha256(authorization.strip().encode("utf-8")).hexdigest()


def compute_request_hash(method: str, path: str, body: bytes) -> str:
    # Hash the request shape so a reused key with a different payload is detectable.
    digest = hashlib.sha256()
    digest.update(method.upper().encode("utf-8"))
    digest.update(b"\x00")
    digest.update(path.encode("utf-8"))
    digest.update(b"\x00")
    digest.update(body)
    return digest.hexdigest()


class IdempotencyCache:
    """In-process replay cache for responses keyed by ``Idempotency-Key``.

    Entries live for ``ttl_s`` seconds. Callers hold ``claim(scope)`` while
    looking up, running the handler and recording, so a concurrent duplicate
    waits for the first request and then replays its response.
    """

    def __init__(
        self,
        *,
        ttl_s: float | None = None,
        max_key_length: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.ttl_s = float(ttl_s if ttl_s is not None else settings.idempotency_ttl_s)
        self.max_key_length = max_key_length or settings.idempotency_key_max_length
        self._clock = clock
        self._entries: dict[IdempotencyScope, IdempotencyEntry] = {}
        self._locks: dict[IdempotencyScope, asyncio.Lock] = {}
        self._waiters: dict[IdempotencyScope, int] = {}

    def normalize_key(self, value: str) -> str:
        # Enforce key size constraints before the key is used as a cache scope.
        cleaned = value.strip()
        if not cleaned:
            raise ValidationError(
                "Idempotency-Key is empty",
                code="IDEMPOTENCY_KEY_INVALID",
            )
        if len(cleaned) > self.max_key_length:
            raise ValidationError(
                f"Idempotency-Key exceeds {self.max_key_length} characters",
                code="IDEMPOTENCY_KEY_INVALID",
            )
        return cleaned

    def scope_for(
        self,
        method: str,
        path: str,
        raw_key: str,
        *,
        caller: str = ANONYMOUS_CALLER,
    ) -> IdempotencyScope:
        return IdempotencyScope(
            caller=caller,
            method=method.upper(),
            path=path,
            key=self.normalize_key(raw_key),
        )

    @asynccontextmanager
    async def claim(self, scope: IdempotencyScope) -> AsyncIterator[None]:
        lock = self._locks.setdefault(scope, asyncio.Lock())
        self._waiters[scope] = self._waiters.get(scope, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters[scope] - 1
            if remaining:
                self._waiters[scope] = remaining
            else:
                self._waiters.pop(scope, None)
                self._locks.pop(scope, None)

    def lookup(self, scope: IdempotencyScope, request_hash: str) -> IdempotencyEntry | None:
        entry = self._entries.get(scope)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(scope, None)
            return None
        if entry.request_hash != request_hash:
            raise ConflictError(
                "Idempotency-Key already used with different payload",
                code="IDEMPOTENCY_KEY_CONFLICT",
            )
        return entry

    def record(self, scope: IdempotencyScope, request_hash: str, response: Any) -> IdempotencyEntry:
        now = self._clock()
        entry = IdempotencyEntry(
            scope=scope,
            request_hash=request_hash,
            response=response,
            recorded_at=now,
            expires_at=now + self.ttl_s,
        )
        self._entries[scope] = entry
        return entry

    def prune(self) -> int:
        # Drop expired entries; returns how many were removed.
        now = self._clock()
        expired = [scope for scope, entry in self._entries.items() if entry.expires_at <= now]
        for scope in expired:
            self._entries.pop(scope, None)
        if expired:
            logger.debug("idempotency.pruned", extra={"removed": len(expired)})
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


_cache: IdempotencyCache | None = None


def get_idempotency_cache() -> IdempotencyCache:
    # Process-level store shared by every wrapped handler that does not bring its own.
    global _cache
    if _cache is None:
        _cache = IdempotencyCache()
    return _cache


def set_idempotency_cache(cache: IdempotencyCache | None) -> None:
    global _cache
    _cache = cache
