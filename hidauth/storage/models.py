from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from urllib.parse import urlsplit


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrustedDevice:
    fingerprint: str
    secret: str
    created_at: datetime = field(default_factory=utcnow)

    def expired(self, ttl_days: int, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return self.created_at + timedelta(days=ttl_days) <= now


@dataclass
class Account:
    id: str
    email: str
    email_verified: bool = False
    password_expires_at: Optional[datetime] = None
    totp_enabled: bool = False
    trusted_devices: Dict[str, TrustedDevice] = field(default_factory=dict)
    authorized_clients: List[str] = field(default_factory=list)
    is_admin: bool = False
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    auth_time: Optional[datetime] = None

    def has_authorized_client(self, client_id: str) -> bool:
        return client_id in self.authorized_clients

    def password_expired(self, now: datetime | None = None) -> bool:
        # Accounts without a recorded expiry never expire
        if self.password_expires_at is None:
            return False
        return self.password_expires_at <= (now or utcnow())

    def public_dict(self) -> dict:
        """Account fields safe to hand back to API callers."""
        return {
            "id": self.id,
            "email": self.email,
            "email_verified": self.email_verified,
            "name": self.name,
            "is_admin": self.is_admin,
            "totp": self.totp_enabled,
            "authorized_clients": list(self.authorized_clients),
            "password_expires_at": self.password_expires_at.isoformat()
            if self.password_expires_at
            else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PasswordRecord:
    account_id: str
    password_hash: str
    password_algo: str = "argon2id"
    last_updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TotpConfig:
    account_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FloodEntry:
    kind: str
    identity: str
    created_at: datetime = field(default_factory=utcnow)
    account_id: Optional[str] = None


@dataclass
class BearerTokenRecord:
    token: str
    account_id: str
    blacklisted: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "user": self.account_id,
            "blacklist": self.blacklisted,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class OAuthClient:
    id: str
    secret: str
    redirect_uri: str
    redirect_urls: List[str] = field(default_factory=list)
    name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def allows_redirect(self, redirect_uri: str) -> bool:
        return redirect_uri == self.redirect_uri or redirect_uri in self.redirect_urls

    def public_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "redirect_uri": self.redirect_uri}


@dataclass
class OAuthToken:
    token: str
    type: str
    client_id: str
    account_id: str
    expires_at: datetime
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    nonce: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    totp_verified: bool = False
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        totp_verified: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            totp_verified=totp_verified,
            user_agent=user_agent,
        )

    def expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class PendingAuthorization:
    transaction_id: str
    session_id: str
    account_id: str
    client_id: str
    redirect_uri: str
    scope: Optional[str] = None
    state: Optional[str] = None
    nonce: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "session_id": self.session_id,
            "account_id": self.account_id,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingAuthorization":
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__})


def redirect_origin(uri: str | None) -> Optional[str]:
    """Scheme and host of ``uri`` or None when it is not an absolute URL."""
    if not uri:
        return None
    parts = urlsplit(uri)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"
