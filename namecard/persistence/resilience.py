from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Awaitable, Callable, Iterator, TypeVar

from opentelemetry.trace import Span
from sqlalchemy.exc import DBAPIError, InterfaceError
from sqlalchemy.ext.asyncio import AsyncSession

from namecard.core.config import Settings, get_settings
from namecard.core.errors import NamecardError, StoreUnavailableError
from namecard.observability.context import current_metrics, current_tracer
from namecard.persistence.db import ConnectionRegistry, ConnectionState
from namecard.persistence.profiles import load_connection_profiles


logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[AsyncSession], Awaitable[T]]

TransientException = (TimeoutError, OSError)

# SQLSTATE 28xxx: invalid authorization specification / invalid password.
_AUTH_SQLSTATE_CLASS = "28"
# SQLSTATE 08xxx: connection exceptions.
_CONNECTION_SQLSTATE_CLASS = "08"
# Server shutting down or out of connection slots.
_TRANSIENT_SQLSTATES = frozenset({"57P01", "57P02", "57P03", "53300"})


class FailureKind(str, Enum):
    AUTH = "auth"
    TRANSIENT = "transient"
    OTHER = "other"


@dataclass(frozen=True)
class RetryPolicy:
    # Linear backoff: the n-th retry waits base_delay_s * n.
    max_attempts: int = 10
    base_delay_s: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.db_retry_attempts),
            base_delay_s=max(0, settings.db_retry_base_delay_ms) / 1000.0,
        )


def _failure_chain(exc: BaseException) -> Iterator[BaseException]:
    # Walk wrapper -> driver error -> cause without looping on cycles.
    seen: set[int] = set()
    pending: list[BaseException | None] = [exc]
    while pending:
        item = pending.pop(0)
        if item is None or id(item) in seen:
            continue
        seen.add(id(item))
        yield item
        orig = getattr(item, "orig", None)
        if isinstance(orig, BaseException):
            pending.append(orig)
        pending.append(item.__cause__)


def _sqlstate(exc: BaseException) -> str | None:
    for attr in ("sqlstate", "pgcode"):
        value = getattr(exc, attr, None)
        if isinstance(value, str) and value:
            return value
    return None


def classify_failure(exc: BaseException) -> FailureKind:
    # Only store auth and connectivity failures are retryable; everything else propagates.
    for item in _failure_chain(exc):
        if isinstance(item, NamecardError):
            return FailureKind.OTHER
        state = _sqlstate(item)
        if state is not None:
            if state.startswith(_AUTH_SQLSTATE_CLASS):
                return FailureKind.AUTH
            if state.startswith(_CONNECTION_SQLSTATE_CLASS) or state in _TRANSIENT_SQLSTATES:
                return FailureKind.TRANSIENT
        if isinstance(item, DBAPIError) and item.connection_invalidated:
            return FailureKind.TRANSIENT
        if isinstance(item, InterfaceError):
            return FailureKind.TRANSIENT
        if isinstance(item, TransientException):
            return FailureKind.TRANSIENT
    return FailureKind.OTHER


class ResilientAccess:
    """Run store operations with retry, backoff and one-shot profile failover.

    Operations receive an ``AsyncSession`` inside an open transaction and must
    not commit themselves; the transaction commits when the operation returns.
    Operations flagged ``idempotent=False`` are retried after a transient
    failure only if it happened before the operation started executing.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._policy = policy or RetryPolicy.from_settings(get_settings())
        self._sleep = sleep

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(
        self,
        operation: Operation[T],
        *,
        idempotent: bool = True,
        name: str | None = None,
    ) -> T:
        op_name = name or getattr(operation, "__name__", "operation")
        with current_tracer().span(f"store.{op_name}", idempotent=idempotent) as span:
            return await self._attempt(operation, op_name, idempotent, span)

    async def _attempt(
        self,
        operation: Operation[T],
        op_name: str,
        idempotent: bool,
        span: Span,
    ) -> T:
        metrics = current_metrics()
        history: list[dict[str, Any]] = []
        switched = False
        attempt = 0
        while True:
            attempt += 1
            span.set_attribute("attempts", attempt)
            phase = "connect"
            profile = self._registry.active_profile
            state: ConnectionState | None = None
            try:
                state = await self._registry.checkout()
                assert state.sessionmaker is not None
                async with state.sessionmaker() as session, session.begin():
                    await session.connection()
                    phase = "execute"
                    result = await operation(session)
                if attempt > 1:
                    metrics.count("store.recovered")
                return result
            except Exception as exc:  # noqa: BLE001 - classified below, non-store errors re-raised
                kind = classify_failure(exc)
                if kind is FailureKind.OTHER:
                    raise
                entry = {
                    "attempt": attempt,
                    "kind": kind.value,
                    "phase": phase,
                    "profile": profile.name,
                    "error_type": type(exc).__name__,
                }
                history.append(entry)
                reason = self._retry_blocker(kind, phase, attempt, idempotent, switched)
                if reason is None and kind is FailureKind.AUTH:
                    switched = await self._registry.switch_to_secondary()
                    if not switched:
                        reason = "auth"
                    else:
                        metrics.count("store.failover")
                delay = self._policy.base_delay_s * (1 if kind is FailureKind.AUTH else attempt)
                logger.warning(
                    "store.attempt_failed",
                    extra={
                        **entry,
                        "operation": op_name,
                        "will_retry": reason is None,
                        "delay_s": delay if reason is None else 0.0,
                    },
                )
                metrics.count("store.attempt_failed")
                if reason is not None:
                    raise self._unavailable(reason, op_name, attempt, history, metrics) from exc
                if kind is FailureKind.TRANSIENT:
                    await self._registry.reset(state)
                await self._sleep(delay)

    def _retry_blocker(
        self,
        kind: FailureKind,
        phase: str,
        attempt: int,
        idempotent: bool,
        switched: bool,
    ) -> str | None:
        if kind is FailureKind.AUTH and switched:
            return "auth"
        if kind is FailureKind.TRANSIENT and not idempotent and phase == "execute":
            # The write may have reached the store; replaying could duplicate it.
            return "ambiguous_write"
        if attempt >= self._policy.max_attempts:
            return "exhausted"
        return None

    def _unavailable(
        self,
        reason: str,
        op_name: str,
        attempt: int,
        history: list[dict[str, Any]],
        metrics: Any,
    ) -> StoreUnavailableError:
        logger.error(
            "store.unavailable",
            extra={
                "operation": op_name,
                "reason": reason,
                "attempts": attempt,
                "history": history,
                "profile": self._registry.active_profile.name,
            },
        )
        metrics.count("store.unavailable")
        return StoreUnavailableError(reason=reason, attempts=attempt, history=history)


_access: ResilientAccess | None = None


def build_access(settings: Settings | None = None) -> ResilientAccess:
    settings = settings or get_settings()
    primary, secondary = load_connection_profiles(settings)
    registry = ConnectionRegistry(primary, secondary, settings=settings)
    return ResilientAccess(registry, RetryPolicy.from_settings(settings))


def get_access() -> ResilientAccess:
    # Lazily build the process-wide access object on first use.
    global _access
    if _access is None:
        _access = build_access()
    return _access


def set_access(access: ResilientAccess | None) -> None:
    # Swap the process-wide access object (app startup, tests).
    global _access
    _access = access


async def with_resilient_access(
    operation: Operation[T],
    *,
    idempotent: bool = True,
    name: str | None = None,
) -> T:
    return await get_access().run(operation, idempotent=idempotent, name=name)
