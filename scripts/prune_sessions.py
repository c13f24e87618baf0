from __future__ import annotations

import asyncio

from namecard.core.logging import configure_logging
from namecard.persistence.resilience import get_access
from namecard.services.auth.sessions import SessionManager


async def prune() -> None:
    # Remove sessions whose refresh window closed or that were revoked.
    configure_logging()
    access = get_access()
    manager = SessionManager(access)
    try:
        removed = await manager.purge_expired()
        print(f"pruned_auth_sessions={removed}")
    finally:
        await access.registry.dispose()


if __name__ == "__main__":
    asyncio.run(prune())
