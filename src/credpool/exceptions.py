"""Consolidated exception hierarchy for credpool.

All exceptions use proper exception chaining with the `from` keyword.
Error types use StrEnum for type safety and autocompletion.
"""

from enum import StrEnum
from http import HTTPStatus
from typing import Any


class ErrorType(StrEnum):
    """Error type codes exposed to host pipelines."""

    INVALID_REQUEST = "invalid_request_error"
    CONFIGURATION = "configuration_error"
    AUTHENTICATION = "authentication_error"
    NOT_FOUND = "not_found_error"
    CONFLICT = "conflict_error"
    RATE_LIMIT = "rate_limit_error"
    STORAGE = "storage_error"
    INTERNAL = "internal_error"


# ============================================================================
# Base Exceptions
# ============================================================================


class CredPoolError(Exception):
    """Base exception for all credpool errors.

    Carries an HTTP status so a host pipeline can map errors onto responses
    without knowing the hierarchy.
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType = ErrorType.INTERNAL,
        status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or {}


# ============================================================================
# Configuration & Validation Errors
# ============================================================================


class ConfigError(CredPoolError):
    """Configuration file missing, unreadable or invalid."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.CONFIGURATION,
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            details=details,
        )


class ValidationError(CredPoolError):
    """Invalid user input (400)."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.INVALID_REQUEST,
            status_code=HTTPStatus.BAD_REQUEST,
            details=details,
        )


class NotFoundError(CredPoolError):
    """Selector did not resolve to an account or profile (404)."""

    def __init__(self, message: str = "Resource not found", *, selector: str | None = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.NOT_FOUND,
            status_code=HTTPStatus.NOT_FOUND,
            details={"selector": selector} if selector is not None else None,
        )
        self.selector = selector


class DuplicateError(CredPoolError):
    """A credential with the same refresh secret is already stored (409)."""

    def __init__(self, message: str, *, existing: Any = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.CONFLICT,
            status_code=HTTPStatus.CONFLICT,
        )
        self.existing = existing


# ============================================================================
# Credentials & OAuth Errors
# ============================================================================


class CredentialsError(CredPoolError):
    """Base credentials error."""

    def __init__(
        self,
        message: str = "Credentials error",
        *,
        error_type: ErrorType = ErrorType.AUTHENTICATION,
        status_code: int = HTTPStatus.UNAUTHORIZED,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            error_type=error_type,
            status_code=status_code,
            details=details,
        )


class CredentialsNotFoundError(CredentialsError):
    """No credential available (no live entry, no accounts configured)."""

    pass


class CredentialsInvalidError(CredentialsError):
    """Credentials are malformed, e.g. missing the refresh secret."""

    pass


class CredentialsStorageError(CredentialsError):
    """Writing a credential document failed."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.STORAGE,
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            details={"path": path} if path else None,
        )


class OAuthError(CredentialsError):
    """Base OAuth error."""

    pass


class UpstreamAuthError(OAuthError):
    """Token refresh rejected by the provider or the call itself failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.upstream_status = status_code
        self.response_text = response_text


# ============================================================================
# Rotation Errors
# ============================================================================


class ExhaustedPoolError(CredPoolError):
    """Every account in the pool is rate limited (429)."""

    def __init__(self, message: str, *, resets_at: int | None = None) -> None:
        super().__init__(
            message,
            error_type=ErrorType.RATE_LIMIT,
            status_code=HTTPStatus.TOO_MANY_REQUESTS,
            details={"resetsAt": resets_at} if resets_at is not None else None,
        )
        self.resets_at = resets_at


__all__ = [
    # Enums
    "ErrorType",
    # Base
    "CredPoolError",
    # Configuration
    "ConfigError",
    "ValidationError",
    "NotFoundError",
    "DuplicateError",
    # Credentials & OAuth
    "CredentialsError",
    "CredentialsNotFoundError",
    "CredentialsInvalidError",
    "CredentialsStorageError",
    "OAuthError",
    "UpstreamAuthError",
    # Rotation
    "ExhaustedPoolError",
]
