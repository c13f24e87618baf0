from __future__ import annotations

import asyncio

from alembic import context
from sqlalchemy.engine import Connection

from namecard.core.config import get_settings
from namecard.domain.models import Base
from namecard.persistence.db import build_engine
from namecard.persistence.profiles import load_connection_profiles


target_metadata = Base.metadata


def _do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    # Migrate the primary profile with the same TLS and credential rules as the app.
    settings = get_settings()
    primary, _secondary = load_connection_profiles(settings)
    engine = build_engine(primary, settings=settings)
    async with engine.connect() as connection:
        await connection.run_sync(_do_run_migrations)
    await engine.dispose()


def run_migrations_offline() -> None:
    settings = get_settings()
    primary, _secondary = load_connection_profiles(settings)
    context.configure(
        url=primary.sqlalchemy_url().render_as_string(hide_password=False),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
