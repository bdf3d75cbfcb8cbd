from __future__ import annotations

import base64
import binascii
import hmac
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Union
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import (
    ClientNotFound,
    InvalidClientAuth,
    InvalidGrant,
    InvalidOAuthRequest,
    RedirectMismatch,
    UnsupportedGrantType,
)
from hidauth.service.session import Authenticated, SessionState
from hidauth.service.tokens import TokenService
from hidauth.storage.models import (
    Account,
    OAuthClient,
    OAuthToken,
    PendingAuthorization,
    redirect_origin,
    utcnow,
)
from hidauth.storage.redis_cache import RedisCache, SyncRedisCache

CODE = "code"
REFRESH = "refresh"

# Parameters carried through the login page back to /oauth/authorize
OAUTH_PARAMS = ("client_id", "redirect_uri", "response_type", "scope", "state", "nonce")

SUPPORTED_SCOPES = ["openid", "email", "profile", "phone"]
SUPPORTED_CLAIMS = [
    "aud",
    "email",
    "email_verified",
    "exp",
    "family_name",
    "given_name",
    "iat",
    "iss",
    "locale",
    "name",
    "sub",
    "updated_at",
    "zoneinfo",
    "nonce",
]


class OAuthStore(Protocol):
    def get_client(self, client_id: str) -> Optional[OAuthClient]: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def add_authorized_client(self, account_id: str, client_id: str) -> Optional[Account]: ...

    def remove_authorized_client(self, account_id: str, client_id: str) -> bool: ...

    def create_oauth_token(self, token: OAuthToken) -> OAuthToken: ...

    def consume_oauth_token(self, token: str, token_type: str) -> Optional[OAuthToken]: ...

    def revoke_oauth_tokens(self, account_id: str, client_id: str) -> int: ...


@dataclass
class AuthorizationRequest:
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    response_type: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    nonce: Optional[str] = None
    prompt: Optional[str] = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "AuthorizationRequest":
        return cls(**{name: params.get(name) or None for name in cls.__dataclass_fields__})

    def oauth_params(self) -> Dict[str, str]:
        """Query parameters to preserve across the login round-trip.

        ``prompt`` is dropped so that ``prompt=login`` does not loop back to
        the login page once the user has logged in.
        """
        return {
            name: getattr(self, name)
            for name in OAUTH_PARAMS
            if getattr(self, name) is not None
        }


@dataclass(frozen=True)
class RedirectTo:
    url: str


@dataclass(frozen=True)
class ConsentPrompt:
    transaction_id: str
    client: OAuthClient
    account_id: str
    scope: Optional[str] = None


@dataclass(frozen=True)
class ConfigurationProblem:
    """Client misconfiguration shown to the user as a generic page."""

    go_back: Optional[str] = None


AuthorizeOutcome = Union[RedirectTo, ConsentPrompt, ConfigurationProblem]


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }
        for name in ("refresh_token", "id_token", "scope"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


def append_query(uri: str, params: Mapping[str, Optional[str]]) -> str:
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def parse_basic_auth(header: Optional[str]) -> Optional[Tuple[str, str]]:
    """Decode ``Authorization: Basic`` client credentials (RFC 6749 §2.3.1)."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic" or not value:
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        return None
    return unquote(client_id), unquote(client_secret)


@dataclass
class _LocalPending:
    payload: dict
    expires_at: datetime = field(default_factory=utcnow)


class OAuthEngine:
    """Authorization-code grant with consent and refresh tokens."""

    def __init__(
        self,
        store: OAuthStore,
        tokens: TokenService,
        settings: Settings,
        *,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.cache = cache
        self.logger = logger or get_logger(__name__)
        self.root_url = settings.root_url
        self.code_ttl = timedelta(seconds=settings.oauth_code_ttl_seconds)
        self.transaction_ttl = settings.oauth_transaction_ttl_seconds
        self.access_token_ttl = timedelta(seconds=settings.oauth_access_token_ttl_seconds)
        self.refresh_token_ttl = timedelta(days=settings.oauth_refresh_token_ttl_days)
        # In-process fallback for pending authorizations when Redis is unavailable
        self._pending: Dict[str, _LocalPending] = {}
        self._pending_lock = threading.Lock()

    # authorization dialog
    async def authorize(
        self, request: AuthorizationRequest, state: SessionState
    ) -> AuthorizeOutcome:
        if not request.response_type:
            self.logger.warning(
                "oauth_authorize_missing_response_type", client_id=request.client_id
            )
            if not request.redirect_uri:
                return ConfigurationProblem()
            return RedirectTo(self._error_redirect(request, "invalid_request"))

        if not isinstance(state, Authenticated) or request.prompt == "login":
            if request.prompt == "none":
                if not request.redirect_uri:
                    self.logger.warning(
                        "oauth_authorize_missing_redirect_uri", client_id=request.client_id
                    )
                    return ConfigurationProblem()
                return RedirectTo(self._error_redirect(request, "login_required"))
            self.logger.info(
                "oauth_authorize_login_redirect",
                client_id=request.client_id,
                response_type=request.response_type,
            )
            return RedirectTo(self.login_redirect(request))

        try:
            client = self.validate_client(request.client_id, request.redirect_uri)
        except ClientNotFound as exc:
            self.logger.warning(
                "oauth_authorize_unknown_client",
                account_id=state.account_id,
                client_id=exc.client_id,
            )
            return ConfigurationProblem()
        except RedirectMismatch as exc:
            self.logger.warning(
                "oauth_authorize_redirect_mismatch",
                account_id=state.account_id,
                client_id=exc.client_id,
                redirect_uri=exc.redirect_uri,
            )
            return ConfigurationProblem(go_back=exc.origin)

        if request.response_type != "code":
            return RedirectTo(self._error_redirect(request, "unsupported_response_type"))

        account = self.store.get_account(state.account_id)
        if account is None:
            return RedirectTo(self.login_redirect(request))

        if account.has_authorized_client(client.id):
            code = self._issue_code(
                account.id, client.id, request.redirect_uri, request.scope, request.nonce
            )
            return RedirectTo(
                append_query(request.redirect_uri, {"code": code, "state": request.state})
            )

        if request.prompt == "none":
            return RedirectTo(self._error_redirect(request, "interaction_required"))

        pending = PendingAuthorization(
            transaction_id=secrets.token_urlsafe(16),
            session_id=state.session_id,
            account_id=account.id,
            client_id=client.id,
            redirect_uri=request.redirect_uri,
            scope=request.scope,
            state=request.state,
            nonce=request.nonce,
        )
        await self._store_pending(pending)
        return ConsentPrompt(
            transaction_id=pending.transaction_id,
            client=client,
            account_id=account.id,
            scope=request.scope,
        )

    async def decide(
        self, transaction_id: Optional[str], state: SessionState, allow: bool
    ) -> RedirectTo:
        if not isinstance(state, Authenticated):
            return RedirectTo(self.login_redirect(AuthorizationRequest()))
        pending = await self._pop_pending(transaction_id) if transaction_id else None
        if pending is None or pending.session_id != state.session_id:
            self.logger.warning("oauth_decision_unknown_transaction", account_id=state.account_id)
            raise InvalidOAuthRequest("unknown or expired authorization transaction")
        if not allow:
            self.logger.info(
                "oauth_consent_denied", account_id=state.account_id, client_id=pending.client_id
            )
            return RedirectTo("/")
        account = self.store.add_authorized_client(pending.account_id, pending.client_id)
        if account is None:
            raise InvalidOAuthRequest("Could not find user")
        self.logger.info(
            "oauth_client_authorized", account_id=account.id, client_id=pending.client_id
        )
        code = self._issue_code(
            account.id, pending.client_id, pending.redirect_uri, pending.scope, pending.nonce
        )
        return RedirectTo(
            append_query(pending.redirect_uri, {"code": code, "state": pending.state})
        )

    def validate_client(self, client_id: Optional[str], redirect_uri: Optional[str]) -> OAuthClient:
        client = self.store.get_client(client_id) if client_id else None
        if client is None:
            raise ClientNotFound(client_id or "")
        if not redirect_uri or not client.allows_redirect(redirect_uri):
            raise RedirectMismatch(
                client.id, redirect_uri or "", origin=redirect_origin(redirect_uri)
            )
        return client

    def login_redirect(self, request: AuthorizationRequest) -> str:
        params = {"redirect": "/oauth/authorize", **request.oauth_params()}
        return f"/?{urlencode(params)}#login"

    # token endpoint
    def exchange(
        self, form: Mapping[str, Any], authorization_header: Optional[str] = None
    ) -> TokenResponse:
        grant_type = form.get("grant_type")
        if not grant_type:
            raise InvalidOAuthRequest("grant_type is required")
        if grant_type not in ("authorization_code", "refresh_token"):
            raise UnsupportedGrantType(f"unsupported grant_type {grant_type}")
        if grant_type == "authorization_code" and not form.get("code"):
            raise InvalidOAuthRequest("Missing code")
        if grant_type == "refresh_token" and not form.get("refresh_token"):
            raise InvalidOAuthRequest("Missing refresh_token")

        client = self._authenticate_client(form, authorization_header)
        if grant_type == "authorization_code":
            return self._exchange_code(client, form.get("code"), form.get("redirect_uri"))
        return self._exchange_refresh(client, form.get("refresh_token"))

    def _authenticate_client(
        self, form: Mapping[str, Any], authorization_header: Optional[str]
    ) -> OAuthClient:
        credentials = parse_basic_auth(authorization_header)
        if credentials is None and form.get("client_id") and form.get("client_secret"):
            credentials = (form["client_id"], form["client_secret"])
        if credentials is None:
            self.logger.warning("oauth_token_missing_client_auth")
            raise InvalidClientAuth("client authentication required")
        client_id, client_secret = credentials
        client = self.store.get_client(client_id)
        if client is None:
            self.logger.warning("oauth_token_unknown_client", client_id=client_id)
            raise InvalidClientAuth("invalid client_id")
        if not hmac.compare_digest(client.secret.encode(), client_secret.encode()):
            self.logger.warning("oauth_token_wrong_secret", client_id=client_id)
            raise InvalidClientAuth("invalid client_secret")
        return client

    def _exchange_code(
        self, client: OAuthClient, code: str, redirect_uri: Optional[str]
    ) -> TokenResponse:
        record = self.store.consume_oauth_token(code, CODE)
        if record is None:
            self.logger.warning("oauth_code_not_found", client_id=client.id)
            raise InvalidGrant("invalid authorization code")
        if record.client_id != client.id:
            self.logger.warning(
                "oauth_code_client_mismatch", client_id=client.id, code_client=record.client_id
            )
            raise InvalidGrant("invalid authorization code")
        if record.expired():
            raise InvalidGrant("authorization code expired")
        if record.redirect_uri and redirect_uri != record.redirect_uri:
            raise InvalidGrant("redirect_uri does not match authorization request")
        account = self.store.get_account(record.account_id)
        if account is None:
            raise InvalidGrant("account no longer exists")

        refresh = self._create_token(
            REFRESH, account.id, client.id, self.refresh_token_ttl, scope=record.scope
        )
        response = self._access_response(account, client, record.scope)
        response.refresh_token = refresh.token
        if record.scope and "openid" in record.scope.split():
            response.id_token = self._id_token(account, client, record.nonce)
        self.logger.info("oauth_code_exchanged", account_id=account.id, client_id=client.id)
        return response

    def _exchange_refresh(self, client: OAuthClient, refresh_token: str) -> TokenResponse:
        record = self.store.consume_oauth_token(refresh_token, REFRESH)
        if record is None or record.client_id != client.id:
            self.logger.warning("oauth_refresh_invalid", client_id=client.id)
            raise InvalidGrant("invalid refresh token")
        if record.expired():
            raise InvalidGrant("refresh token expired")
        account = self.store.get_account(record.account_id)
        if account is None or not account.has_authorized_client(client.id):
            raise InvalidGrant("invalid refresh token")
        self.logger.info("oauth_token_refreshed", account_id=account.id, client_id=client.id)
        return self._access_response(account, client, record.scope)

    def _access_response(
        self, account: Account, client: OAuthClient, scope: Optional[str]
    ) -> TokenResponse:
        now = utcnow()
        claims = {
            "id": account.id,
            "sub": account.id,
            "client_id": client.id,
            "exp": int((now + self.access_token_ttl).timestamp()),
        }
        if scope:
            claims["scope"] = scope
        return TokenResponse(
            access_token=self.tokens.issue(claims),
            expires_in=int(self.access_token_ttl.total_seconds()),
            scope=scope,
        )

    def _id_token(self, account: Account, client: OAuthClient, nonce: Optional[str]) -> str:
        now = utcnow()
        claims = {
            "id": account.id,
            "sub": account.id,
            "aud": client.id,
            "exp": int((now + self.access_token_ttl).timestamp()),
            "email": account.email,
            "email_verified": account.email_verified,
        }
        if account.name:
            claims["name"] = account.name
        if account.auth_time:
            claims["auth_time"] = int(account.auth_time.timestamp())
        if nonce:
            claims["nonce"] = nonce
        return self.tokens.issue(claims)

    def _issue_code(
        self,
        account_id: str,
        client_id: str,
        redirect_uri: str,
        scope: Optional[str],
        nonce: Optional[str],
    ) -> str:
        record = self._create_token(
            CODE,
            account_id,
            client_id,
            self.code_ttl,
            redirect_uri=redirect_uri,
            scope=scope,
            nonce=nonce,
        )
        self.logger.info("oauth_code_issued", account_id=account_id, client_id=client_id)
        return record.token

    def _create_token(
        self,
        token_type: str,
        account_id: str,
        client_id: str,
        ttl: timedelta,
        **fields: Optional[str],
    ) -> OAuthToken:
        return self.store.create_oauth_token(
            OAuthToken(
                token=secrets.token_urlsafe(32),
                type=token_type,
                client_id=client_id,
                account_id=account_id,
                expires_at=utcnow() + ttl,
                **fields,
            )
        )

    # consent management
    def authorized_clients(self, account: Account) -> List[dict]:
        clients = []
        for client_id in account.authorized_clients:
            client = self.store.get_client(client_id)
            clients.append(client.public_dict() if client else {"id": client_id})
        return clients

    def revoke_client(self, account_id: str, client_id: str) -> bool:
        removed = self.store.remove_authorized_client(account_id, client_id)
        revoked = self.store.revoke_oauth_tokens(account_id, client_id)
        self.logger.info(
            "oauth_client_revoked",
            account_id=account_id,
            client_id=client_id,
            tokens_revoked=revoked,
        )
        return removed

    def openid_configuration(self) -> dict:
        root = self.root_url
        return {
            "issuer": root,
            "authorization_endpoint": f"{root}/oauth/authorize",
            "token_endpoint": f"{root}/oauth/access_token",
            "token_endpoint_auth_methods_supported": [
                "client_secret_basic",
                "client_secret_post",
            ],
            "userinfo_endpoint": f"{root}/v1/account",
            "jwks_uri": f"{root}/oauth/jwks",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code", "refresh_token"],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["RS256"],
            "scopes_supported": list(SUPPORTED_SCOPES),
            "claims_supported": list(SUPPORTED_CLAIMS),
        }

    # pending authorizations
    async def _store_pending(self, pending: PendingAuthorization) -> None:
        if self.cache is not None:
            await self.cache.set_pending_authorization(
                pending.transaction_id, pending.to_dict(), self.transaction_ttl
            )
            return
        expires_at = utcnow() + timedelta(seconds=self.transaction_ttl)
        with self._pending_lock:
            now = utcnow()
            for key in [k for k, v in self._pending.items() if v.expires_at <= now]:
                self._pending.pop(key, None)
            self._pending[pending.transaction_id] = _LocalPending(
                payload=pending.to_dict(), expires_at=expires_at
            )

    async def _pop_pending(self, transaction_id: str) -> Optional[PendingAuthorization]:
        if self.cache is not None:
            payload = await self.cache.pop_pending_authorization(transaction_id)
        else:
            with self._pending_lock:
                entry = self._pending.pop(transaction_id, None)
            payload = entry.payload if entry and entry.expires_at > utcnow() else None
        return PendingAuthorization.from_dict(payload) if payload else None

    def _error_redirect(self, request: AuthorizationRequest, error: str) -> str:
        return append_query(
            request.redirect_uri,
            {
                "error": error,
                "state": request.state,
                "scope": request.scope,
                "nonce": request.nonce,
            },
        )
