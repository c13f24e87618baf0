from __future__ import annotations

import logging

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from namecard.core.errors import ConflictError, StoreUnavailableError
from namecard.observability.context import InvocationContext, invocation_scope
from namecard.observability.metrics import MetricsBuffer
from namecard.observability.tracing import span_summary
from namecard.persistence.db import ConnectionRegistry
from namecard.persistence.profiles import ConnectionProfile
from namecard.persistence.resilience import (
    FailureKind,
    ResilientAccess,
    RetryPolicy,
    classify_failure,
    set_access,
    with_resilient_access,
)
from namecard.tests.utils.store import (
    DriverError,
    FlakyConnectRegistry,
    RecordingSleep,
    auth_failure,
    connection_lost,
)


def _sqlite_profile(name: str) -> ConnectionProfile:
    return ConnectionProfile.from_url(name, "sqlite+aiosqlite://")


def _attempt_records(caplog) -> list[logging.LogRecord]:
    return [record for record in caplog.records if record.getMessage() == "store.attempt_failed"]


def test_classify_failure_kinds() -> None:
    assert classify_failure(auth_failure()) is FailureKind.AUTH
    assert classify_failure(connection_lost()) is FailureKind.TRANSIENT
    assert classify_failure(DriverError("terminating connection", "57P01")) is FailureKind.TRANSIENT
    assert classify_failure(DriverError("too many connections", "53300")) is FailureKind.TRANSIENT
    assert classify_failure(TimeoutError("timed out")) is FailureKind.TRANSIENT
    assert classify_failure(ConnectionResetError("reset by peer")) is FailureKind.TRANSIENT
    assert classify_failure(DriverError("duplicate key", "23505")) is FailureKind.OTHER
    assert classify_failure(ValueError("bad input")) is FailureKind.OTHER


def test_classify_failure_walks_wrapped_driver_errors() -> None:
    wrapped_auth = OperationalError("SELECT 1", {}, auth_failure())
    assert classify_failure(wrapped_auth) is FailureKind.AUTH

    wrapped_io = OperationalError("SELECT 1", {}, Exception("server closed"))
    wrapped_io.__cause__ = OSError("broken pipe")
    assert classify_failure(wrapped_io) is FailureKind.TRANSIENT

    assert classify_failure(InterfaceError("SELECT 1", {}, Exception("closed"))) is FailureKind.TRANSIENT
    invalidated = OperationalError("SELECT 1", {}, Exception("gone"), connection_invalidated=True)
    assert classify_failure(invalidated) is FailureKind.TRANSIENT

    integrity = IntegrityError("INSERT", {}, DriverError("duplicate key", "23505"))
    assert classify_failure(integrity) is FailureKind.OTHER


def test_application_errors_are_never_retryable() -> None:
    conflict = ConflictError("exists")
    conflict.__cause__ = OSError("unrelated")
    assert classify_failure(conflict) is FailureKind.OTHER


@pytest.mark.asyncio
async def test_run_commits_and_returns_operation_result(registry: ConnectionRegistry) -> None:
    access = ResilientAccess(registry, RetryPolicy(max_attempts=2, base_delay_s=0))

    async def _select(session) -> int:
        return (await session.execute(text("SELECT 41 + 1"))).scalar_one()

    assert await access.run(_select) == 42


@pytest.mark.asyncio
async def test_transient_failures_exhaust_exact_ceiling(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="namecard.persistence.resilience")
    registry = ConnectionRegistry(_sqlite_profile("primary"))
    sleep = RecordingSleep()
    access = ResilientAccess(registry, RetryPolicy(max_attempts=4, base_delay_s=0.5), sleep=sleep)
    calls = {"count": 0}

    async def _always_down(_session) -> None:
        calls["count"] += 1
        raise connection_lost()

    with pytest.raises(StoreUnavailableError) as exc_info:
        await access.run(_always_down, name="cards.lookup")

    error = exc_info.value
    assert calls["count"] == 4
    assert error.reason == "exhausted"
    assert error.attempts == 4
    assert [entry["attempt"] for entry in error.history] == [1, 2, 3, 4]
    assert len(_attempt_records(caplog)) == 4
    # Linear backoff between attempts, none after the last.
    assert sleep.delays == [0.5, 1.0, 1.5]
    assert any(record.getMessage() == "store.unavailable" for record in caplog.records)
    await registry.dispose()


@pytest.mark.asyncio
async def test_transient_failure_recovers_on_retry() -> None:
    registry = ConnectionRegistry(_sqlite_profile("primary"))
    sleep = RecordingSleep()
    access = ResilientAccess(registry, RetryPolicy(max_attempts=5, base_delay_s=0.1), sleep=sleep)
    calls = {"count": 0}

    async def _flaky(_session) -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise TimeoutError("timeout")
        return "ok"

    assert await access.run(_flaky) == "ok"
    assert calls["count"] == 3
    assert sleep.delays == pytest.approx([0.1, 0.2])
    await registry.dispose()


@pytest.mark.asyncio
async def test_store_operation_records_span_with_attempts() -> None:
    registry = ConnectionRegistry(_sqlite_profile("primary"))
    access = ResilientAccess(registry, RetryPolicy(max_attempts=5, base_delay_s=0), sleep=RecordingSleep())
    calls = {"count": 0}

    async def load_card(_session) -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    context = InvocationContext(correlation_id="corr-1", service="cards", metrics=MetricsBuffer("cards"))
    with invocation_scope(context):
        assert await access.run(load_card) == "ok"

    (span,) = context.tracing.spans
    summary = span_summary(span)
    assert summary["name"] == "store.load_card"
    assert dict(span.attributes) == {"idempotent": True, "attempts": 2}
    assert summary["error"] is None
    assert summary["durationMs"] is not None
    assert [event.name for event in context.metrics.pending] == ["store.attempt_failed", "store.recovered"]
    await registry.dispose()


@pytest.mark.asyncio
async def test_auth_failure_switches_profile_once_then_fails_fast(caplog) -> None:
    caplog.set_level(logging.WARNING)
    registry = ConnectionRegistry(_sqlite_profile("primary"), _sqlite_profile("secondary"))
    sleep = RecordingSleep()
    access = ResilientAccess(registry, RetryPolicy(max_attempts=10, base_delay_s=0), sleep=sleep)
    calls = {"count": 0}

    async def _rejected(_session) -> None:
        calls["count"] += 1
        raise auth_failure()

    with pytest.raises(StoreUnavailableError) as exc_info:
        await access.run(_rejected)

    assert calls["count"] == 2
    assert exc_info.value.reason == "auth"
    assert exc_info.value.attempts == 2
    assert registry.active_profile.name == "secondary"
    switches = [record for record in caplog.records if record.getMessage() == "store.profile_switched"]
    assert len(switches) == 1
    assert switches[0].from_profile == "primary"
    assert switches[0].to_profile == "secondary"
    await registry.dispose()


@pytest.mark.asyncio
async def test_auth_failure_recovers_on_secondary_profile() -> None:
    registry = ConnectionRegistry(_sqlite_profile("primary"), _sqlite_profile("secondary"))
    access = ResilientAccess(registry, RetryPolicy(max_attempts=10, base_delay_s=0), sleep=RecordingSleep())
    seen_profiles: list[str] = []

    async def _primary_rejects(_session) -> str:
        seen_profiles.append(registry.active_profile.name)
        if registry.active_profile.name == "primary":
            raise OperationalError("connect", {}, auth_failure())
        return "ok"

    assert await access.run(_primary_rejects) == "ok"
    assert seen_profiles == ["primary", "secondary"]
    await registry.dispose()


@pytest.mark.asyncio
async def test_auth_failure_without_secondary_fails_fast() -> None:
    registry = ConnectionRegistry(_sqlite_profile("primary"))
    sleep = RecordingSleep()
    access = ResilientAccess(registry, RetryPolicy(max_attempts=10, base_delay_s=1), sleep=sleep)
    calls = {"count": 0}

    async def _rejected(_session) -> None:
        calls["count"] += 1
        raise auth_failure()

    with pytest.raises(StoreUnavailableError) as exc_info:
        await access.run(_rejected)

    assert calls["count"] == 1
    assert exc_info.value.reason == "auth"
    assert sleep.delays == []
    await registry.dispose()


@pytest.mark.asyncio
async def test_non_store_errors_propagate_unchanged() -> None:
    registry = ConnectionRegistry(_sqlite_profile("primary"))
    access = ResilientAccess(registry, RetryPolicy(max_attempts=5, base_delay_s=0), sleep=RecordingSleep())
    calls = {"count": 0}

    async def _broken(_session) -> None:
        calls["count"] += 1
        raise ConflictError("already exists")

    with pytest.raises(ConflictError):
        await access.run(_broken)
    assert calls["count"] == 1
    await registry.dispose()


@pytest.mark.asyncio
async def test_non_idempotent_write_is_not_replayed_after_execution_failure() -> None:
    registry = ConnectionRegistry(_sqlite_profile("primary"))
    sleep = RecordingSleep()
    access = ResilientAccess(registry, RetryPolicy(max_attempts=5, base_delay_s=1), sleep=sleep)
    calls = {"count": 0}

    async def _write(_session) -> None:
        calls["count"] += 1
        raise connection_lost()

    with pytest.raises(StoreUnavailableError) as exc_info:
        await access.run(_write, idempotent=False)

    assert calls["count"] == 1
    assert exc_info.value.reason == "ambiguous_write"
    assert exc_info.value.history[0]["phase"] == "execute"
    assert sleep.delays == []
    await registry.dispose()


@pytest.mark.asyncio
async def test_non_idempotent_write_retries_connect_failures() -> None:
    registry = FlakyConnectRegistry(connect_failures=2)
    sleep = RecordingSleep()
    access = ResilientAccess(registry, RetryPolicy(max_attempts=5, base_delay_s=0.25), sleep=sleep)  # type: ignore[arg-type]
    calls = {"count": 0}

    async def _write(_session) -> str:
        calls["count"] += 1
        return "written"

    assert await access.run(_write, idempotent=False) == "written"
    assert calls["count"] == 1
    assert registry.resets == 2
    # Each reset names the state whose checkout failed.
    assert all(state is not None for state in registry.reset_states)
    assert sleep.delays == [0.25, 0.5]


@pytest.mark.asyncio
async def test_with_resilient_access_uses_process_default(access: ResilientAccess) -> None:
    set_access(access)

    async def _select(session) -> int:
        return (await session.execute(text("SELECT 7"))).scalar_one()

    assert await with_resilient_access(_select) == 7


def test_retry_policy_from_settings() -> None:
    from namecard.core.config import Settings

    policy = RetryPolicy.from_settings(Settings(db_retry_attempts=10, db_retry_base_delay_ms=1000))
    assert policy == RetryPolicy(max_attempts=10, base_delay_s=1.0)
