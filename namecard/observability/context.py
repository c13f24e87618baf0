from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
import time
from typing import Iterator
import uuid

import structlog

from namecard.core.config import get_settings
from namecard.observability.metrics import MetricsBuffer
from namecard.observability.tracing import SpanRecorder


@dataclass(frozen=True)
class InvocationContext:
    correlation_id: str
    service: str
    metrics: MetricsBuffer
    tracing: SpanRecorder = field(default_factory=SpanRecorder)
    invocation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.monotonic)
    cold_start: bool = False


_current: ContextVar[InvocationContext | None] = ContextVar("namecard_invocation", default=None)


@contextmanager
def invocation_scope(context: InvocationContext) -> Iterator[InvocationContext]:
    # Bind the invocation for this task and its children; restored on exit even if the handler raises.
    token = _current.set(context)
    bound = structlog.contextvars.bind_contextvars(
        correlationId=context.correlation_id,
        service=context.service,
        invocationId=context.invocation_id,
    )
    try:
        yield context
    finally:
        structlog.contextvars.reset_contextvars(**bound)
        _current.reset(token)


def current_invocation() -> InvocationContext | None:
    return _current.get()


def current_correlation_id() -> str | None:
    context = _current.get()
    return context.correlation_id if context is not None else None


def current_metrics() -> MetricsBuffer:
    # Outside an invocation, metrics go to a throwaway buffer instead of failing.
    context = _current.get()
    if context is None:
        return MetricsBuffer(get_settings().service_name)
    return context.metrics


def current_tracer() -> SpanRecorder:
    # Spans recorded outside an invocation are never flushed.
    context = _current.get()
    if context is None:
        return SpanRecorder()
    return context.tracing
