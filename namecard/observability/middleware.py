from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import time
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from namecard.apps.api.response import error_response
from namecard.core.config import get_settings
from namecard.core.errors import NamecardError, UnauthorizedError, classify_error
from namecard.observability.context import InvocationContext, invocation_scope
from namecard.observability.idempotency import (
    IDEMPOTENCY_HEADER,
    IdempotencyCache,
    caller_fingerprint,
    compute_request_hash,
    get_idempotency_cache,
)
from namecard.observability.metrics import MetricsBuffer, record_request


logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-Id"
REQUEST_ID_HEADER = "X-Request-Id"


@dataclass(frozen=True)
class HttpRequest:
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    # Id already assigned by the host (API gateway, upstream middleware).
    request_id: str | None = None
    # Host-specific request object; opaque to the observability core.
    native: Any = field(default=None, compare=False, repr=False)

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: bytes = b""
    headers: tuple[tuple[str, str], ...] = ()

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None


Handler = Callable[[HttpRequest], Awaitable[HttpResponse]]


def resolve_correlation_id(request: HttpRequest) -> str:
    # Reuse upstream ids when present so one request traces across services.
    for candidate in (
        request.request_id,
        request.header(CORRELATION_HEADER),
        request.header(REQUEST_ID_HEADER),
    ):
        if candidate and candidate.strip():
            return candidate.strip()
    return str(uuid4())


async def _run_idempotent(
    handler: Handler,
    request: HttpRequest,
    cache: IdempotencyCache,
    context: InvocationContext,
) -> HttpResponse:
    raw_key = request.header(IDEMPOTENCY_HEADER)
    if raw_key is None:
        return await handler(request)
    scope = cache.scope_for(
        request.method,
        request.path,
        raw_key,
        caller=caller_fingerprint(request.header("Authorization")),
    )
    request_hash = compute_request_hash(request.method, request.path, request.body)
    async with cache.claim(scope):
        entry = cache.lookup(scope, request_hash)
        if entry is not None:
            logger.info(
                "idempotency.replay",
                extra={"idempotency_key": scope.key, "path": scope.path, "status": entry.response.status_code},
            )
            context.metrics.count("idempotencyReplay")
            return entry.response
        response = await handler(request)
        if response.status_code < 500:
            cache.prune()
            cache.record(scope, request_hash, response)
            logger.info(
                "idempotency.recorded",
                extra={"idempotency_key": scope.key, "path": scope.path, "ttl_s": cache.ttl_s},
            )
        return response


def wrap(
    handler: Handler,
    *,
    service_name: str | None = None,
    cache: IdempotencyCache | None = None,
    idempotency: bool = True,
) -> Handler:
    """Wrap ``handler`` with invocation context, lifecycle logs, metrics and idempotent replay.

    Without an explicit ``cache`` the process-level store is used; pass
    ``idempotency=False`` to opt out of replay entirely.
    """
    service = service_name or get_settings().service_name
    cold_start = True

    async def observed(request: HttpRequest) -> HttpResponse:
        nonlocal cold_start
        context = InvocationContext(
            correlation_id=resolve_correlation_id(request),
            service=service,
            metrics=MetricsBuffer(service),
            cold_start=cold_start,
        )
        cold_start = False
        with invocation_scope(context):
            logger.info(
                "invocation.started",
                extra={"method": request.method, "path": request.path, "cold_start": context.cold_start},
            )
            try:
                with context.tracing.span("handler", method=request.method, path=request.path):
                    if not idempotency:
                        response = await handler(request)
                    else:
                        store = cache if cache is not None else get_idempotency_cache()
                        response = await _run_idempotent(handler, request, store, context)
            except Exception as exc:
                duration_ms = (time.monotonic() - context.started_at) * 1000.0
                code = classify_error(exc)
                context.metrics.count("handlerErrors", dimensions={"errorName": type(exc).__name__})
                logger.error(
                    "invocation.failed",
                    exc_info=not isinstance(exc, NamecardError),
                    extra={
                        "path": request.path,
                        "durationMs": round(duration_ms, 3),
                        "error_message": str(exc),
                        "classification": "classified" if isinstance(exc, NamecardError) else "unclassified",
                        "code": code,
                    },
                )
                raise
            else:
                duration_ms = (time.monotonic() - context.started_at) * 1000.0
                context.metrics.duration("handlerDurationMs", duration_ms, {"path": request.path})
                context.metrics.count("handlerSuccess")
                logger.info(
                    "invocation.completed",
                    extra={
                        "path": request.path,
                        "status": response.status_code,
                        "durationMs": round(duration_ms, 3),
                    },
                )
                return response
            finally:
                context.metrics.flush()
                context.tracing.flush()

    return observed


def _error_envelope(exc: Exception, request_id: str) -> JSONResponse:
    if isinstance(exc, NamecardError):
        status_code = exc.status_code
        payload = error_response(
            request_id=request_id,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    else:
        status_code = 500
        payload = error_response(request_id=request_id, code="INTERNAL_ERROR", message="Internal server error")
    headers = {REQUEST_ID_HEADER: request_id}
    if isinstance(exc, UnauthorizedError):
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


class RequestObservabilityMiddleware(BaseHTTPMiddleware):
    """Starlette host for ``wrap``: adapts ASGI requests and maps raised errors to envelopes."""

    def __init__(
        self,
        app: Any,
        *,
        service_name: str | None = None,
        cache: IdempotencyCache | None = None,
    ) -> None:
        super().__init__(app)
        self._observed = wrap(self._forward, service_name=service_name, cache=cache)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.monotonic()
        http_request = HttpRequest(
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers),
            body=await request.body(),
            request_id=getattr(request.state, "request_id", None),
            native=(request, call_next),
        )
        # Resolve once so error envelopes carry the same id as the logs.
        request_id = resolve_correlation_id(http_request)
        http_request = replace(http_request, request_id=request_id)
        try:
            result = await self._observed(http_request)
            response = _to_starlette(result)
        except Exception as exc:  # noqa: BLE001 - host boundary, already logged by wrap
            response = _error_envelope(exc, request_id)
        if REQUEST_ID_HEADER.lower() not in response.headers:
            response.headers[REQUEST_ID_HEADER] = request_id
        record_request(
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        return response

    async def _forward(self, http_request: HttpRequest) -> HttpResponse:
        request, call_next = http_request.native
        request.state.request_id = http_request.request_id
        response = await call_next(request)
        chunks = [chunk async for chunk in response.body_iterator]
        body = b"".join(chunk if isinstance(chunk, bytes) else chunk.encode("utf-8") for chunk in chunks)
        headers = [(key, value) for key, value in response.headers.items()]
        if not any(key.lower() == REQUEST_ID_HEADER.lower() for key, _ in headers):
            headers.append((REQUEST_ID_HEADER.lower(), http_request.request_id or ""))
        return HttpResponse(status_code=response.status_code, body=body, headers=tuple(headers))


def _to_starlette(result: HttpResponse) -> Response:
    response = Response(content=result.body, status_code=result.status_code)
    response.raw_headers = [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in result.headers]
    return response
