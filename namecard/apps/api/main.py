from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from namecard.apps.api.errors import http_exception_handler, validation_exception_handler
from namecard.apps.api.routes.auth import router as auth_router
from namecard.apps.api.routes.health import router as health_router
from namecard.apps.api.routes.ops import router as ops_router
from namecard.core.config import get_settings
from namecard.core.logging import configure_logging
from namecard.observability.idempotency import IdempotencyCache
from namecard.observability.middleware import RequestObservabilityMiddleware
from namecard.services.auth.sessions import SessionManager


logger = logging.getLogger(__name__)


def create_app(
    *,
    session_manager: SessionManager | None = None,
    idempotency_cache: IdempotencyCache | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()
    manager = session_manager or SessionManager(settings=settings)
    cache = idempotency_cache if idempotency_cache is not None else IdempotencyCache()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("app.started", extra={"app_name": settings.app_name})
        yield
        # Release pooled store connections on shutdown.
        await manager.access.registry.dispose()

    app = FastAPI(title="namecard API", lifespan=lifespan)
    app.state.session_manager = manager
    app.state.idempotency_cache = cache

    # NamecardError propagates to the observability middleware, which renders its envelope.
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_middleware(
        RequestObservabilityMiddleware,
        service_name=settings.service_name,
        cache=cache,
    )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(ops_router)
    return app


app = create_app()
