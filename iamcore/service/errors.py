from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can switch on. Subclasses that refine a cause
    for logging keep their parent's code and message so callers cannot
    tell which check failed.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class StorageError(ServerError):
    """Backing store failed; the operation was not applied (503)."""
    status_code = 503
    error_code = "storage_error"
    default_message = "storage unavailable"


# Login


class InvalidCredentials(AuthenticationError):
    """Unknown user, wrong password or wrong tenant. Deliberately indistinguishable."""
    error_code = "invalid_credentials"
    default_message = "invalid credentials"


class UserInactive(ForbiddenError):
    error_code = "user_inactive"
    default_message = "user is not active"


class TenantNotFound(NotFoundError):
    error_code = "tenant_not_found"
    default_message = "tenant not found"


class TenantInactive(ForbiddenError):
    error_code = "tenant_inactive"
    default_message = "tenant is not active"


# Refresh tokens


class InvalidRefreshToken(AuthenticationError):
    error_code = "invalid_refresh_token"
    default_message = "invalid refresh token"


class RefreshTokenNotFound(InvalidRefreshToken):
    pass


class RefreshTokenExpired(InvalidRefreshToken):
    pass


class RefreshTokenRevoked(InvalidRefreshToken):
    pass


# Access tokens


class InvalidToken(AuthenticationError):
    error_code = "invalid_token"
    default_message = "invalid token"


class TokenMalformed(InvalidToken):
    pass


class TokenSignatureMismatch(InvalidToken):
    pass


class TokenExpired(InvalidToken):
    pass


class TokenClaimsInvalid(InvalidToken):
    pass


# Authorization gate


class Unauthorized(AuthenticationError):
    """Missing or unverifiable bearer token."""


class Forbidden(ForbiddenError):
    """Valid token, insufficient role."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "StorageError",
    "InvalidCredentials",
    "UserInactive",
    "TenantNotFound",
    "TenantInactive",
    "InvalidRefreshToken",
    "RefreshTokenNotFound",
    "RefreshTokenExpired",
    "RefreshTokenRevoked",
    "InvalidToken",
    "TokenMalformed",
    "TokenSignatureMismatch",
    "TokenExpired",
    "TokenClaimsInvalid",
    "Unauthorized",
    "Forbidden",
]
