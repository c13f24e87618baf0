from __future__ import annotations

from fastapi import Depends, Header, Request

from namecard.core.errors import UnauthorizedError
from namecard.services.auth.sessions import SessionManager, SessionUser


def get_session_manager(request: Request) -> SessionManager:
    # One manager per app, created at startup and shared across requests.
    return request.app.state.session_manager


def _parse_bearer_token(authorization: str | None) -> str | None:
    # Extract bearer tokens without raising so callers decide on 401 semantics.
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


async def get_bearer_token(authorization: str | None = Header(default=None)) -> str:
    token = _parse_bearer_token(authorization)
    if token is None:
        raise UnauthorizedError("Missing bearer token")
    return token


async def get_current_user(
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
) -> SessionUser:
    # Absent, unknown, revoked and expired tokens all collapse to one 401.
    user = await manager.resolve(token)
    if user is None:
        raise UnauthorizedError("Invalid or expired token")
    return user
