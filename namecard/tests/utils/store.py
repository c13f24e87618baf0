from __future__ import annotations

from typing import Any

from namecard.persistence.db import ConnectionState
from namecard.persistence.profiles import ConnectionProfile


class DriverError(Exception):
    """Stand-in for a driver exception carrying a SQLSTATE."""

    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def auth_failure() -> DriverError:
    return DriverError('password authentication failed for user "app"', "28P01")


def connection_lost() -> DriverError:
    return DriverError("connection to server was lost", "08006")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _FakeTransaction:
    async def __aenter__(self) -> "_FakeTransaction":
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


class _FakeSession:
    def __init__(self, registry: "FlakyConnectRegistry") -> None:
        self._registry = registry

    async def __aenter__(self) -> "_FakeSession":
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False

    def begin(self) -> _FakeTransaction:
        return _FakeTransaction()

    async def connection(self) -> None:
        if self._registry.connect_failures > 0:
            self._registry.connect_failures -= 1
            raise ConnectionRefusedError("connection refused")


class FlakyConnectRegistry:
    """Registry double whose connection checkout fails a set number of times."""

    def __init__(self, connect_failures: int) -> None:
        self.connect_failures = connect_failures
        self.resets = 0
        self.reset_states: list[ConnectionState | None] = []
        self.active_profile = ConnectionProfile(
            name="primary",
            host="db.internal",
            port=5432,
            database="namecard",
            username="app",
        )

    async def checkout(self) -> ConnectionState:
        return ConnectionState(profile=self.active_profile, sessionmaker=lambda: _FakeSession(self))  # type: ignore[arg-type]

    async def reset(self, failed: ConnectionState | None = None) -> bool:
        self.resets += 1
        self.reset_states.append(failed)
        return True

    async def switch_to_secondary(self) -> bool:
        return False
