from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


T = TypeVar("T")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorDetail(BaseModel):
    # Standardize error codes/messages with optional structured details.
    message: str
    code: str | None = None
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    success: bool = True
    data: T
    timestamp: str = Field(default_factory=_timestamp)
    requestId: str


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: str = Field(default_factory=_timestamp)
    requestId: str


def get_request_id(request: Request) -> str:
    # Use the id assigned by the observability middleware when present.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    envelope = SuccessEnvelope[Any](data=data, requestId=get_request_id(request))
    return envelope.model_dump(mode="json")


def error_response(
    *,
    request_id: str,
    message: str,
    code: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Return the standard error envelope; the request id ties it to the invocation logs.
    envelope = ErrorEnvelope(
        error=ErrorDetail(message=message, code=code, details=details),
        requestId=request_id,
    )
    return envelope.model_dump(mode="json", exclude_none=True)
