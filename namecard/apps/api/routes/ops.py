from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from namecard.apps.api.deps import get_current_user, get_session_manager
from namecard.apps.api.response import SuccessEnvelope, success_response
from namecard.services.auth.sessions import SessionManager, SessionUser
from namecard.observability.metrics import availability, get_aggregator


router = APIRouter(prefix="/v1/ops", tags=["ops"])


class OpsMetricsResponse(BaseModel):
    activeSessions: int
    knownUsers: int
    availability: float | None
    p95LatencyMs: float | None
    counters: dict[str, Any]


@router.get("/metrics", response_model=SuccessEnvelope[OpsMetricsResponse])
async def metrics(
    request: Request,
    _user: SessionUser = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    # Combine store-backed session counts with the process metric roll-up.
    sessions = await manager.session_metrics()
    aggregator = get_aggregator()
    latency = aggregator.series("requestLatencyMs")
    payload = OpsMetricsResponse(
        activeSessions=sessions.active_sessions,
        knownUsers=sessions.known_users,
        availability=availability(),
        p95LatencyMs=latency.percentile(95) if latency is not None else None,
        counters=aggregator.counters(),
    )
    return success_response(request=request, data=payload.model_dump())
