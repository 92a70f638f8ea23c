from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Stable error codes surfaced to clients."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    USER_EXISTS = "USER_EXISTS"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CSRF_INVALID = "CSRF_INVALID"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    LOGIN_LOCKED = "LOGIN_LOCKED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class Failure:
    kind: ErrorKind
    message: str
    details: Any = None
    retry_after: Optional[int] = None


@dataclass
class Outcome(Generic[T]):
    """Result of a service operation: either ``value`` or ``failure`` is set."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        details: Any = None,
        retry_after: Optional[int] = None,
    ) -> "Outcome[T]":
        return cls(failure=Failure(kind, message, details, retry_after))


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - VALIDATION_ERROR / BAD_REQUEST (400)
    - UNAUTHORIZED / INVALID_CREDENTIALS / INVALID_TOKEN (401)
    - FORBIDDEN / CSRF_INVALID (403)
    - NOT_FOUND (404)
    - USER_EXISTS (409)
    - RATE_LIMIT_EXCEEDED / LOGIN_LOCKED (429)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = ErrorKind.VALIDATION_ERROR.value

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Any = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail
        self.headers = headers or {}

    @classmethod
    def from_failure(
        cls, failure: Failure, *, status_code: Optional[int] = None
    ) -> "ServiceError":
        error_cls = _KIND_TO_ERROR.get(failure.kind, ServerError)
        headers = {}
        if failure.retry_after is not None:
            headers["Retry-After"] = str(max(1, int(failure.retry_after)))
        return error_cls(
            failure.message,
            status_code=status_code,
            detail=failure.details,
            error_code=failure.kind.value,
            headers=headers,
        )


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = ErrorKind.VALIDATION_ERROR.value


class BadRequestError(ServiceError):
    """Request is malformed in a way validation does not cover (400)."""
    status_code = 400
    error_code = ErrorKind.BAD_REQUEST.value


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorKind.UNAUTHORIZED.value


class InvalidCredentialsError(AuthenticationError):
    error_code = ErrorKind.INVALID_CREDENTIALS.value


class InvalidTokenError(AuthenticationError):
    """Opaque token did not match a consumable record.

    Refresh surfaces this as 401; verify-email and password reset use 400.
    """
    error_code = ErrorKind.INVALID_TOKEN.value


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = ErrorKind.FORBIDDEN.value


class CsrfError(ForbiddenError):
    error_code = ErrorKind.CSRF_INVALID.value


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = ErrorKind.NOT_FOUND.value


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate account (409)."""
    status_code = 409
    error_code = ErrorKind.USER_EXISTS.value


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = ErrorKind.RATE_LIMIT_EXCEEDED.value


class LoginLockedError(RateLimitedError):
    error_code = ErrorKind.LOGIN_LOCKED.value


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = ErrorKind.INTERNAL_ERROR.value


_KIND_TO_ERROR: Dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.BAD_REQUEST: BadRequestError,
    ErrorKind.USER_EXISTS: ConflictError,
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    ErrorKind.INVALID_TOKEN: InvalidTokenError,
    ErrorKind.UNAUTHORIZED: AuthenticationError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.CSRF_INVALID: CsrfError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.RATE_LIMIT_EXCEEDED: RateLimitedError,
    ErrorKind.LOGIN_LOCKED: LoginLockedError,
    ErrorKind.INTERNAL_ERROR: ServerError,
}


__all__ = [
    "ErrorKind",
    "Failure",
    "Outcome",
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "CsrfError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "LoginLockedError",
    "ServerError",
]
