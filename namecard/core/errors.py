from __future__ import annotations

from typing import Any


class NamecardError(Exception):
    """Base error for namecard; carries the HTTP mapping used by the API layer."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        self.details = details
        super().__init__(self.message)


class ConfigurationError(NamecardError):
    """Missing or invalid runtime configuration."""

    code = "CONFIGURATION_ERROR"


class ValidationError(NamecardError):
    """Bad caller input; never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Validation failed"


class UnauthorizedError(NamecardError):
    """Missing or unusable bearer token."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class InvalidCredentialsError(UnauthorizedError):
    """Unknown user or wrong password; the message never says which."""

    code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class InvalidRefreshTokenError(UnauthorizedError):
    """Refresh token unknown, rotated, revoked or expired."""

    code = "INVALID_REFRESH_TOKEN"
    default_message = "Refresh token invalid or expired"


class NotFoundError(NamecardError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ConflictError(NamecardError):
    code = "CONFLICT"
    status_code = 409
    default_message = "Resource already exists"


class StoreUnavailableError(NamecardError):
    """Store access failed after the resilience layer gave up."""

    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_message = "Database unavailable"

    def __init__(
        self,
        message: str | None = None,
        *,
        reason: str,
        attempts: int,
        history: list[dict[str, Any]] | None = None,
    ) -> None:
        self.reason = reason
        self.attempts = attempts
        self.history = list(history or [])
        super().__init__(message, details={"reason": reason, "attempts": attempts})


def classify_error(exc: BaseException) -> str:
    # Map exceptions to stable codes for logs; anything foreign is unclassified.
    if isinstance(exc, NamecardError):
        return exc.code
    return "UNCLASSIFIED"
