from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)

    OAuth failures additionally carry the RFC 6749 error codes
    (invalid_request, invalid_client, invalid_grant, ...).
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TransientStoreError(ServiceError):
    """A backing store timed out or was unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"
    retryable = True

    def __init__(self, message: str = "storage temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Login / credential failures


class MissingCredentials(ValidationError):
    """Email or password absent from the request."""

    def __init__(self, message: str = "email and password are required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password."""

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerified(InvalidCredentials):
    """Account exists but its email has not been confirmed.

    Shares the public message of :class:`InvalidCredentials` so that callers
    cannot probe which addresses are registered; the precise reason is logged.
    """


class PasswordExpired(AuthenticationError):
    """Password is past its expiry; the user must reset it."""

    def __init__(self, message: str = "password is expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TooManyAttempts(RateLimitedError):
    """Identity is locked out after repeated failures."""

    def __init__(
        self,
        message: str = "Your account has been locked for 5 minutes because of too many requests.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidTOTP(AuthenticationError):
    """Second-factor code missing or wrong."""

    def __init__(self, message: str = "invalid TOTP code", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Bearer tokens


class InvalidToken(AuthenticationError):
    """Token signature, structure or issuer did not verify."""

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredToken(InvalidToken):
    """Token verified but its exp claim has passed."""

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


# OAuth2


class OAuthError(ServiceError):
    """Base for errors whose error_code is an RFC 6749 code."""
    status_code = 400
    error_code = "invalid_request"


class InvalidOAuthRequest(OAuthError):
    """Malformed authorization or token request."""


class ClientNotFound(OAuthError):
    """No OAuth client registered under the supplied client_id."""
    status_code = 400
    error_code = "invalid_client"

    def __init__(self, client_id: str, **kwargs) -> None:
        super().__init__("invalid client_id", detail={"client_id": client_id}, **kwargs)
        self.client_id = client_id


class RedirectMismatch(OAuthError):
    """redirect_uri is neither the client's primary nor an alternate URI."""
    status_code = 400
    error_code = "invalid_request"

    def __init__(self, client_id: str, redirect_uri: str, origin: Optional[str] = None, **kwargs) -> None:
        super().__init__(
            "redirect_uri does not match client",
            detail={"client_id": client_id, "redirect_uri": redirect_uri},
            **kwargs,
        )
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.origin = origin


class InvalidClientAuth(OAuthError):
    """Client credentials missing, unknown or wrong at the token endpoint."""
    status_code = 401
    error_code = "invalid_client"


class InvalidGrant(OAuthError):
    """Code or refresh token missing, expired, reused or bound to another client."""
    status_code = 400
    error_code = "invalid_grant"

    def __init__(self, message: str = "invalid grant", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnsupportedGrantType(OAuthError):
    status_code = 400
    error_code = "unsupported_grant_type"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "TransientStoreError",
    "MissingCredentials",
    "InvalidCredentials",
    "EmailNotVerified",
    "PasswordExpired",
    "TooManyAttempts",
    "InvalidTOTP",
    "InvalidToken",
    "ExpiredToken",
    "OAuthError",
    "InvalidOAuthRequest",
    "ClientNotFound",
    "RedirectMismatch",
    "InvalidClientAuth",
    "InvalidGrant",
    "UnsupportedGrantType",
]
