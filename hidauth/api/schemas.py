from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_URL_LENGTH = 2048

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
    # RFC 6749 section 5.2
    "invalid_request",
    "invalid_client",
    "invalid_grant",
    "unsupported_grant_type",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi-override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenRequest(BaseModel):
    """Credentials exchanged for a JWT; ``exp`` makes the token short-lived."""

    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=1024)
    exp: Optional[int] = Field(default=None, gt=0)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip().lower())


class BlacklistRequest(BaseModel):
    token: Optional[str] = Field(default=None, max_length=8192)


class SignedRequestBody(BaseModel):
    url: Optional[str] = Field(default=None, max_length=MAX_URL_LENGTH)


class TotpCodeRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=16)


class AccountResponse(BaseModel):
    id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    is_admin: bool = False
    totp: bool = False
    authorized_clients: List[str] = Field(default_factory=list)
    password_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class TokenIssuedResponse(BaseModel):
    user: AccountResponse
    token: str


class TokenRecordResponse(BaseModel):
    token: str
    user: str
    blacklist: bool
    created_at: Optional[datetime] = None


class TotpEnrollmentResponse(BaseModel):
    secret: str
    otpauth_uri: str


class SignedRequestResponse(BaseModel):
    bewit: str


class ClientSummary(BaseModel):
    id: str
    name: Optional[str] = None
    redirect_uri: Optional[str] = None
