from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from namecard.core.config import Settings, get_settings
from namecard.domain.models import Base
from namecard.persistence.credentials import SignerCache, credential_for
from namecard.persistence.profiles import ConnectionProfile, should_enforce_tls


logger = logging.getLogger(__name__)

EngineFactory = Callable[[ConnectionProfile], AsyncEngine]


def build_engine(
    profile: ConnectionProfile,
    *,
    settings: Settings | None = None,
    signers: SignerCache | None = None,
) -> AsyncEngine:
    settings = settings or get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    connect_args: dict[str, Any] = {}
    if profile.is_sqlite:
        # In-memory sqlite needs one shared connection or every checkout sees an empty DB.
        connect_args["check_same_thread"] = False
        if profile.is_memory:
            engine_kwargs["poolclass"] = StaticPool
    else:
        # Configure bounded asyncpg pools for predictable latency under load.
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.db_statement_timeout_ms > 0:
            connect_args["server_settings"] = {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        if should_enforce_tls(profile):
            connect_args["ssl"] = "require"
    if connect_args:
        engine_kwargs["connect_args"] = connect_args
    engine = create_async_engine(profile.sqlalchemy_url(), **engine_kwargs)

    if profile.use_dynamic_credentials:
        provider = credential_for(profile, signers or SignerCache(region=settings.aws_region))

        @event.listens_for(engine.sync_engine, "do_connect")
        def _inject_credential(dialect, conn_rec, cargs, cparams):  # type: ignore[no-untyped-def]
            # Each physical connection asks for the current short-lived credential.
            cparams["password"] = provider.current()

    logger.info(
        "store.engine_created",
        extra={**profile.describe(), "tls": should_enforce_tls(profile)},
    )
    return engine


@dataclass(frozen=True)
class ConnectionState:
    # Swapped as a whole so readers see either the old or the fully switched profile.
    profile: ConnectionProfile
    engine: AsyncEngine | None = None
    sessionmaker: async_sessionmaker[AsyncSession] | None = None


class ConnectionRegistry:
    """Process-wide owner of the memoized engine and the active profile.

    ``switch_to_secondary`` is the only way the active profile changes.
    """

    def __init__(
        self,
        primary: ConnectionProfile,
        secondary: ConnectionProfile | None = None,
        *,
        settings: Settings | None = None,
        signers: SignerCache | None = None,
        engine_factory: EngineFactory | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._signers = signers or SignerCache(
            region=self._settings.aws_region,
            token_ttl_s=self._settings.db_iam_token_ttl_s,
        )
        self._engine_factory = engine_factory or (
            lambda profile: build_engine(profile, settings=self._settings, signers=self._signers)
        )
        self._primary = primary
        self._secondary = secondary
        self._state = ConnectionState(profile=primary)
        self._lock = asyncio.Lock()

    @property
    def active_profile(self) -> ConnectionProfile:
        return self._state.profile

    @property
    def primary(self) -> ConnectionProfile:
        return self._primary

    @property
    def secondary(self) -> ConnectionProfile | None:
        return self._secondary

    @property
    def signers(self) -> SignerCache:
        return self._signers

    async def checkout(self) -> ConnectionState:
        # Return the live state, building its engine on first use.
        state = self._state
        if state.sessionmaker is not None:
            return state
        async with self._lock:
            state = self._state
            if state.sessionmaker is None:
                engine = self._engine_factory(state.profile)
                state = ConnectionState(
                    profile=state.profile,
                    engine=engine,
                    sessionmaker=async_sessionmaker(engine, expire_on_commit=False),
                )
                self._state = state
            return state

    async def get_sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        state = await self.checkout()
        assert state.sessionmaker is not None
        return state.sessionmaker

    async def get_engine(self) -> AsyncEngine:
        engine = (await self.checkout()).engine
        assert engine is not None
        return engine

    async def reset(self, failed: ConnectionState | None = None) -> bool:
        # Drop the memoized engine; the next access reconnects with the same profile.
        # With ``failed``, only that state is dropped; a newer engine is left alone.
        async with self._lock:
            old = self._state
            if failed is not None and old is not failed:
                logger.debug("store.reset_skipped", extra={"profile": old.profile.name})
                return False
            self._state = ConnectionState(profile=old.profile)
        await self._dispose(old.engine)
        return True

    async def switch_to_secondary(self) -> bool:
        async with self._lock:
            old = self._state
            if self._secondary is None or old.profile == self._secondary:
                return False
            self._state = ConnectionState(profile=self._secondary)
        await self._dispose(old.engine)
        logger.warning(
            "store.profile_switched",
            extra={"from_profile": old.profile.name, "to_profile": self._secondary.name},
        )
        return True

    async def dispose(self) -> None:
        await self.reset()

    async def _dispose(self, engine: AsyncEngine | None) -> None:
        if engine is None:
            return
        try:
            await engine.dispose()
        except Exception as exc:  # noqa: BLE001 - a dead pool must not block reconnecting
            logger.warning("store.dispose_failed", extra={"error_type": type(exc).__name__})


async def create_schema(registry: ConnectionRegistry) -> None:
    # Create auth tables directly for dev and tests; deployed stores use alembic.
    engine = await registry.get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
