from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from namecard.apps.api.deps import get_bearer_token, get_current_user, get_session_manager
from namecard.apps.api.response import SuccessEnvelope, success_response
from namecard.services.auth.sessions import IssuedSession, SessionManager, SessionUser


router = APIRouter(prefix="/v1/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    email: str = Field(max_length=320)
    password: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=200)


class LoginRequest(BaseModel):
    email: str = Field(max_length=320)
    password: str = Field(min_length=1, max_length=128)


class RefreshRequest(BaseModel):
    refreshToken: str = Field(min_length=1)


class TokensPayload(BaseModel):
    accessToken: str
    refreshToken: str
    expiresAt: datetime


class SessionPayload(BaseModel):
    user: dict[str, Any]
    tokens: TokensPayload


def _session_payload(issued: IssuedSession) -> SessionPayload:
    return SessionPayload(
        user=issued.user.to_public(),
        tokens=TokensPayload(
            accessToken=issued.access_token,
            refreshToken=issued.refresh_token,
            expiresAt=issued.expires_at,
        ),
    )


@router.post(
    "/register",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[SessionPayload],
)
async def register(
    request: Request,
    payload: RegisterRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    issued = await manager.register(payload.email, payload.password, payload.name)
    return success_response(request=request, data=_session_payload(issued).model_dump(mode="json"))


@router.post("/login", response_model=SuccessEnvelope[SessionPayload])
async def login(
    request: Request,
    payload: LoginRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    issued = await manager.authenticate(payload.email, payload.password)
    return success_response(request=request, data=_session_payload(issued).model_dump(mode="json"))


@router.post("/refresh", response_model=SuccessEnvelope[TokensPayload])
async def refresh(
    request: Request,
    payload: RefreshRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    tokens = await manager.refresh(payload.refreshToken)
    data = TokensPayload(
        accessToken=tokens.access_token,
        refreshToken=tokens.refresh_token,
        expiresAt=tokens.expires_at,
    )
    return success_response(request=request, data=data.model_dump(mode="json"))


@router.post("/logout")
async def logout(
    request: Request,
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
) -> dict:
    # Logout succeeds for unknown or already revoked tokens too.
    await manager.revoke(token)
    return success_response(request=request, data={"message": "Logged out"})


@router.get("/me")
async def me(request: Request, user: SessionUser = Depends(get_current_user)) -> dict:
    return success_response(request=request, data=user.to_public())
