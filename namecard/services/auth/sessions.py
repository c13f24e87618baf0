from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Callable, NoReturn
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from namecard.core.config import Settings, get_settings
from namecard.core.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    ValidationError,
)
from namecard.domain.models import AuthSession, AuthUser
from namecard.observability.context import current_metrics
from namecard.persistence.resilience import ResilientAccess, get_access
from namecard.services.auth.passwords import burn_verify, hash_password, verify_password
from namecard.services.auth.tokens import generate_access_token, generate_refresh_token, hash_token


logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_PASSWORD_BYTES = 72

DEFAULT_PREFERENCES: dict[str, Any] = {
    "theme": "light",
    "notifications": True,
    "emailUpdates": False,
    "language": "en",
    "timezone": "UTC",
}


def _utc_now() -> datetime:
    # Keep session timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionUser:
    id: str
    email: str
    tenant_id: str
    name: str | None = None
    avatar_url: str | None = None
    preferences: dict[str, Any] = field(default_factory=dict)
    session_id: str | None = None

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "tenantId": self.tenant_id,
            "avatarUrl": self.avatar_url,
            "preferences": dict(self.preferences),
        }


@dataclass(frozen=True)
class IssuedSession:
    user: SessionUser
    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RefreshedTokens:
    access_token: str
    refresh_token: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionMetrics:
    active_sessions: int
    known_users: int


@dataclass(frozen=True)
class _TokenPair:
    access_token: str
    refresh_token: str
    issued_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime


def normalize_email(email: str | None) -> str:
    # Emails compare case-insensitively; store and look up the lower-cased form.
    cleaned = (email or "").strip().lower()
    if not cleaned:
        raise ValidationError("Email is required", details={"field": "email"})
    if len(cleaned) > 320 or not _EMAIL_PATTERN.match(cleaned):
        raise ValidationError("Email is not valid", details={"field": "email"})
    return cleaned


def _user_view(user: AuthUser, session_id: str | None = None) -> SessionUser:
    return SessionUser(
        id=user.id,
        email=user.email,
        tenant_id=user.tenant_id,
        name=user.name,
        avatar_url=user.avatar_url,
        preferences=dict(user.preferences or {}),
        session_id=session_id,
    )


class SessionManager:
    """Issue, rotate, revoke and resolve opaque bearer sessions.

    Raw tokens only ever leave through the return values of ``register``,
    ``authenticate`` and ``refresh``; the store keeps peppered digests.
    """

    def __init__(
        self,
        access: ResilientAccess | None = None,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._access = access
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def access(self) -> ResilientAccess:
        if self._access is None:
            self._access = get_access()
        return self._access

    def _hash(self, raw_token: str) -> str:
        return hash_token(raw_token, pepper=self._settings.token_hash_pepper)

    def _new_pair(self) -> _TokenPair:
        now = self._clock()
        return _TokenPair(
            access_token=generate_access_token(),
            refresh_token=generate_refresh_token(),
            issued_at=now,
            expires_at=now + timedelta(seconds=self._settings.auth_access_token_ttl_s),
            refresh_expires_at=now + timedelta(seconds=self._settings.auth_refresh_token_ttl_s),
        )

    def _session_row(self, user_id: str, pair: _TokenPair) -> AuthSession:
        return AuthSession(
            id=str(uuid4()),
            user_id=user_id,
            access_token_hash=self._hash(pair.access_token),
            refresh_token_hash=self._hash(pair.refresh_token),
            issued_at=pair.issued_at,
            access_token_expires_at=pair.expires_at,
            refresh_token_expires_at=pair.refresh_expires_at,
            revoked_at=None,
        )

    async def register(self, email: str, password: str, name: str | None) -> IssuedSession:
        normalized = normalize_email(email)
        if not password:
            raise ValidationError("Password is required", details={"field": "password"})
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError("Password is too long", details={"field": "password"})
        display_name = (name or "").strip()
        if not display_name:
            raise ValidationError("Name is required", details={"field": "name"})

        password_hash = await hash_password(password, rounds=self._settings.password_hash_rounds)
        pair = self._new_pair()

        async def _create_user(session: AsyncSession) -> SessionUser:
            existing = await session.scalar(select(AuthUser.id).where(AuthUser.email == normalized))
            if existing is not None:
                raise ConflictError("An account with this email already exists")
            user = AuthUser(
                id=str(uuid4()),
                tenant_id=str(uuid4()),
                email=normalized,
                password_hash=password_hash,
                name=display_name,
                avatar_url=None,
                preferences=dict(DEFAULT_PREFERENCES),
            )
            session.add(user)
            # Flush the user first so the session FK is satisfied on every backend.
            await session.flush()
            row = self._session_row(user.id, pair)
            session.add(row)
            await session.flush()
            return _user_view(user, row.id)

        try:
            user = await self.access.run(_create_user, idempotent=False, name="auth.register")
        except IntegrityError as exc:
            # A concurrent registration won the unique email index.
            raise ConflictError("An account with this email already exists") from exc
        logger.info("auth.registered", extra={"user_id": user.id, "tenant_id": user.tenant_id})
        current_metrics().count("userRegistered")
        return IssuedSession(
            user=user,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )

    async def authenticate(self, email: str, password: str) -> IssuedSession:
        normalized = (email or "").strip().lower()
        if not normalized or not password:
            self._login_failed("missing_credentials")

        async def _load_user(session: AsyncSession) -> tuple[SessionUser, str] | None:
            user = await session.scalar(select(AuthUser).where(AuthUser.email == normalized))
            if user is None:
                return None
            return _user_view(user), user.password_hash

        found = await self.access.run(_load_user, name="auth.load_user")
        if found is None:
            await burn_verify(password)
            self._login_failed("unknown_user")
        user, password_hash = found
        if not await verify_password(password, password_hash):
            self._login_failed("bad_password")

        pair = self._new_pair()

        async def _open_session(session: AsyncSession) -> str:
            row = self._session_row(user.id, pair)
            session.add(row)
            await session.flush()
            return row.id

        session_id = await self.access.run(_open_session, idempotent=False, name="auth.open_session")
        logger.info("auth.login_succeeded", extra={"user_id": user.id, "session_id": session_id})
        current_metrics().count("loginSucceeded")
        return IssuedSession(
            user=SessionUser(
                id=user.id,
                email=user.email,
                tenant_id=user.tenant_id,
                name=user.name,
                avatar_url=user.avatar_url,
                preferences=user.preferences,
                session_id=session_id,
            ),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )

    def _login_failed(self, reason: str) -> NoReturn:
        # The reason is logged only; callers always see the same error.
        logger.warning("auth.login_failed", extra={"reason": reason})
        current_metrics().count("loginFailed")
        raise InvalidCredentialsError()

    async def refresh(self, refresh_token: str) -> RefreshedTokens:
        if not refresh_token or not refresh_token.strip():
            raise InvalidRefreshTokenError()
        old_hash = self._hash(refresh_token.strip())
        pair = self._new_pair()
        now = pair.issued_at

        async def _rotate(session: AsyncSession) -> str | None:
            session_id = await session.scalar(
                select(AuthSession.id).where(
                    AuthSession.refresh_token_hash == old_hash,
                    AuthSession.revoked_at.is_(None),
                    AuthSession.refresh_token_expires_at > now,
                )
            )
            if session_id is None:
                return None
            # Conditional on the old hash so two concurrent refreshes cannot both rotate.
            result = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.id == session_id,
                    AuthSession.refresh_token_hash == old_hash,
                    AuthSession.revoked_at.is_(None),
                )
                .values(
                    access_token_hash=self._hash(pair.access_token),
                    refresh_token_hash=self._hash(pair.refresh_token),
                    issued_at=now,
                    access_token_expires_at=pair.expires_at,
                    refresh_token_expires_at=pair.refresh_expires_at,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return session_id if result.rowcount == 1 else None

        session_id = await self.access.run(_rotate, idempotent=False, name="auth.refresh")
        if session_id is None:
            logger.warning("auth.refresh_rejected")
            current_metrics().count("refreshRejected")
            raise InvalidRefreshTokenError()
        logger.info("auth.session_refreshed", extra={"session_id": session_id})
        return RefreshedTokens(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_at=pair.expires_at,
        )

    async def revoke(self, access_token: str) -> bool:
        # Revoking an unknown or already revoked token is a no-op.
        if not access_token or not access_token.strip():
            return False
        token_hash = self._hash(access_token.strip())
        now = self._clock()

        async def _revoke(session: AsyncSession) -> int:
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.access_token_hash == token_hash, AuthSession.revoked_at.is_(None))
                .values(revoked_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        # Replaying this update is harmless, so it may retry like a read.
        revoked = await self.access.run(_revoke, name="auth.revoke")
        if revoked:
            logger.info("auth.session_revoked", extra={"sessions": revoked})
        return revoked > 0

    async def resolve(self, access_token: str | None) -> SessionUser | None:
        if not access_token or not access_token.strip():
            return None
        token_hash = self._hash(access_token.strip())
        now = self._clock()

        async def _lookup(session: AsyncSession) -> SessionUser | None:
            row = (
                await session.execute(
                    select(AuthUser, AuthSession.id)
                    .join(AuthSession, AuthSession.user_id == AuthUser.id)
                    .where(
                        AuthSession.access_token_hash == token_hash,
                        AuthSession.revoked_at.is_(None),
                        AuthSession.access_token_expires_at > now,
                    )
                )
            ).first()
            if row is None:
                return None
            user, session_id = row
            return _user_view(user, session_id)

        return await self.access.run(_lookup, name="auth.resolve")

    async def get_user(self, user_id: str) -> SessionUser:
        async def _load(session: AsyncSession) -> SessionUser | None:
            user = await session.get(AuthUser, user_id)
            return _user_view(user) if user is not None else None

        user = await self.access.run(_load, name="auth.get_user")
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return user

    async def session_metrics(self) -> SessionMetrics:
        now = self._clock()

        async def _count(session: AsyncSession) -> SessionMetrics:
            active = await session.scalar(
                select(func.count())
                .select_from(AuthSession)
                .where(AuthSession.revoked_at.is_(None), AuthSession.access_token_expires_at > now)
            )
            users = await session.scalar(select(func.count()).select_from(AuthUser))
            return SessionMetrics(active_sessions=int(active or 0), known_users=int(users or 0))

        return await self.access.run(_count, name="auth.session_metrics")

    async def purge_expired(self, before: datetime | None = None) -> int:
        # Remove sessions that can no longer be refreshed or were revoked before the cutoff.
        cutoff = before or self._clock()

        async def _purge(session: AsyncSession) -> int:
            result = await session.execute(
                delete(AuthSession)
                .where(
                    or_(
                        AuthSession.refresh_token_expires_at <= cutoff,
                        AuthSession.revoked_at <= cutoff,
                    )
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        removed = await self.access.run(_purge, name="auth.purge_expired")
        logger.info("auth.sessions_purged", extra={"removed": removed, "cutoff": cutoff.isoformat()})
        return removed
