from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
import logging
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.trace import Span, Status, StatusCode, Tracer, format_span_id

from namecard.core.config import get_settings


logger = logging.getLogger(__name__)


@lru_cache
def get_tracer() -> Tracer:
    # Private provider: spans are reported through the invocation log, not a global exporter.
    provider = TracerProvider(resource=Resource.create({"service.name": get_settings().service_name}))
    return provider.get_tracer("namecard")


def _duration_ms(span: ReadableSpan) -> float | None:
    if span.start_time is None or span.end_time is None:
        return None
    return round((span.end_time - span.start_time) / 1_000_000, 3)


def _error(span: ReadableSpan) -> str | None:
    if span.status.status_code is StatusCode.ERROR:
        return span.status.description
    return None


def span_summary(span: ReadableSpan) -> dict[str, Any]:
    return {
        "id": format_span_id(span.context.span_id),
        "parentId": format_span_id(span.parent.span_id) if span.parent is not None else None,
        "name": span.name,
        "durationMs": _duration_ms(span),
        "error": _error(span),
        **dict(span.attributes or {}),
    }


class SpanRecorder:
    """Per-invocation span log, written out as one ``trace.flush`` batch."""

    def __init__(self, tracer: Tracer | None = None) -> None:
        self._tracer = tracer
        self._spans: list[Any] = []

    @contextmanager
    def span(self, name: str, **attributes: Any) -> Iterator[Span]:
        tracer = self._tracer or get_tracer()
        current = tracer.start_span(name, attributes=attributes)
        self._spans.append(current)
        span_id = format_span_id(current.get_span_context().span_id)
        logger.debug("trace.span.start", extra={"spanId": span_id, "span_name": name})
        try:
            with trace.use_span(current, record_exception=False, set_status_on_exception=False):
                yield current
        except BaseException as exc:
            current.set_status(Status(StatusCode.ERROR, str(exc) or type(exc).__name__))
            raise
        finally:
            current.end()
            logger.debug(
                "trace.span.end",
                extra={
                    "spanId": span_id,
                    "span_name": name,
                    "durationMs": _duration_ms(current),
                    "error": _error(current),
                },
            )

    @property
    def spans(self) -> list[ReadableSpan]:
        return list(self._spans)

    def flush(self) -> list[ReadableSpan]:
        # Spans still open at flush time are reported with no duration.
        if not self._spans:
            return []
        batch, self._spans = self._spans, []
        logger.info("trace.flush", extra={"spans": [span_summary(span) for span in batch]})
        return batch

    def __len__(self) -> int:
        return len(self._spans)
