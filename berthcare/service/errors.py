from __future__ import annotations

from enum import Enum
from typing import Optional


class AuthErrorCode(str, Enum):
    """Closed set of machine-readable error codes surfaced to API clients.

    Clients branch on these values (for example, ``TokenExpired`` means try a
    refresh, ``TokenRevoked`` means log in again), never on message text.
    """

    INVALID_CREDENTIALS = "InvalidCredentials"
    MISSING_TOKEN = "MissingToken"
    INVALID_TOKEN_FORMAT = "InvalidTokenFormat"
    TOKEN_MALFORMED = "TokenMalformed"
    TOKEN_EXPIRED = "TokenExpired"
    SIGNATURE_INVALID = "SignatureInvalid"
    ISSUER_AUDIENCE_MISMATCH = "IssuerAudienceMismatch"
    TOKEN_REVOKED = "TokenRevoked"
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    STORE_UNAVAILABLE = "StoreUnavailable"
    INVALID_INPUT = "InvalidInput"
    EMAIL_EXISTS = "EmailExists"
    FORBIDDEN = "Forbidden"
    NOT_FOUND = "NotFound"
    DUPLICATE_TOKEN = "DuplicateToken"
    INTERNAL_ERROR = "InternalError"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and an ``error_code`` from
    :class:`AuthErrorCode`, plus a generic default message so that callers
    raising authentication failures do not leak why a check failed.
    """

    status_code: int = 400
    error_code: AuthErrorCode = AuthErrorCode.INVALID_INPUT
    default_message: str = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[AuthErrorCode] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def code(self) -> str:
        return self.error_code.value


class InvalidInputError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = AuthErrorCode.INVALID_INPUT
    default_message = "invalid input"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = AuthErrorCode.INVALID_CREDENTIALS
    default_message = "authentication failed"


class InvalidCredentialsError(AuthenticationError):
    error_code = AuthErrorCode.INVALID_CREDENTIALS
    default_message = "invalid email or password"


class MissingTokenError(AuthenticationError):
    error_code = AuthErrorCode.MISSING_TOKEN
    default_message = "authentication required"


class InvalidTokenFormatError(AuthenticationError):
    error_code = AuthErrorCode.INVALID_TOKEN_FORMAT
    default_message = "authorization header must use the Bearer scheme"


class TokenMalformedError(AuthenticationError):
    error_code = AuthErrorCode.TOKEN_MALFORMED
    default_message = "invalid token"


class TokenExpiredError(AuthenticationError):
    error_code = AuthErrorCode.TOKEN_EXPIRED
    default_message = "token expired"


class SignatureInvalidError(AuthenticationError):
    error_code = AuthErrorCode.SIGNATURE_INVALID
    default_message = "invalid token"


class IssuerAudienceMismatchError(AuthenticationError):
    error_code = AuthErrorCode.ISSUER_AUDIENCE_MISMATCH
    default_message = "invalid token"


class TokenRevokedError(AuthenticationError):
    error_code = AuthErrorCode.TOKEN_REVOKED
    default_message = "token revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient role, permission or zone (403)."""
    status_code = 403
    error_code = AuthErrorCode.FORBIDDEN
    default_message = "insufficient permissions"


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email that is already registered (409)."""
    status_code = 409
    error_code = AuthErrorCode.EMAIL_EXISTS
    default_message = "an account with this email already exists"


class RateLimitExceededError(ServiceError):
    """Admission denied for the current fixed window (429)."""
    status_code = 429
    error_code = AuthErrorCode.RATE_LIMIT_EXCEEDED
    default_message = "too many attempts, try again later"

    def __init__(self, retry_after: int, limit: int, **kwargs) -> None:
        self.retry_after = max(1, int(retry_after))
        self.limit = limit
        detail = {"retry_after": self.retry_after, "limit": limit}
        super().__init__(detail=detail, **kwargs)


__all__ = [
    "AuthErrorCode",
    "ServiceError",
    "InvalidInputError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MissingTokenError",
    "InvalidTokenFormatError",
    "TokenMalformedError",
    "TokenExpiredError",
    "SignatureInvalidError",
    "IssuerAudienceMismatchError",
    "TokenRevokedError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitExceededError",
]
