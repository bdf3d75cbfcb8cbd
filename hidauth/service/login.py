from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlencode

from hidauth.config import Settings
from hidauth.logging import get_logger, log_auth_event
from hidauth.service.credentials import CredentialVerifier
from hidauth.service.errors import AuthenticationError, ForbiddenError
from hidauth.service.oauth import OAUTH_PARAMS
from hidauth.service.session import (
    Anonymous,
    Authenticated,
    SessionBridge,
    SessionState,
)
from hidauth.service.tokens import TokenService
from hidauth.service.totp import TotpGate
from hidauth.storage.models import Account


class LoginAccountStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def record_auth_time(self, account_id: str) -> None: ...


def _safe_local_path(path: Optional[str]) -> Optional[str]:
    if not path or not path.startswith("/") or path.startswith("//") or "\\" in path:
        return None
    return path


class LoginService:
    """Composes credential, second-factor and session checks into login flows."""

    def __init__(
        self,
        store: LoginAccountStore,
        verifier: CredentialVerifier,
        totp: TotpGate,
        tokens: TokenService,
        sessions: SessionBridge,
        settings: Settings,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.totp = totp
        self.tokens = tokens
        self.sessions = sessions
        self.default_redirect = settings.login_default_redirect
        self.logger = logger or get_logger(__name__)

    def issue_api_token(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        totp_code: Optional[str] = None,
        user_agent: Optional[str] = None,
        trust_cookie: Optional[str] = None,
        exp: Optional[int] = None,
        require_admin: bool = False,
    ) -> Tuple[Account, str]:
        account = self.verifier.verify(email, password)
        if require_admin and not account.is_admin:
            self.logger.warning("admin_token_forbidden", account_id=account.id)
            raise ForbiddenError("admin privileges required")
        if self.totp.requires_challenge(account, user_agent, trust_cookie):
            self.totp.challenge(account, totp_code)

        claims: dict = {"id": account.id}
        if exp:
            claims["exp"] = int(exp)
        token = self.tokens.issue(claims)
        log_auth_event(
            "api_token_issued",
            self.logger,
            account_id=account.id,
            admin=require_admin,
            durable=exp is None,
        )
        return account, token

    def login(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        user_agent: Optional[str] = None,
        trust_cookie: Optional[str] = None,
    ) -> SessionState:
        """Browser login; returns AwaitingTOTP when a second factor is due."""
        account = self.verifier.verify(email, password)
        needs_totp = self.totp.requires_challenge(account, user_agent, trust_cookie)
        state = self.sessions.begin(
            account, totp_verified=not needs_totp, user_agent=user_agent
        )
        if isinstance(state, Authenticated):
            self.store.record_auth_time(account.id)
            log_auth_event("login_succeeded", self.logger, account_id=account.id)
        return state

    def submit_totp(
        self,
        state: SessionState,
        code: Optional[str],
        *,
        remember_device: bool = False,
        user_agent: Optional[str] = None,
    ) -> Tuple[Authenticated, Optional[str]]:
        """Complete a pending login; returns the trust-cookie secret if requested."""
        if isinstance(state, Authenticated):
            return state, None
        if isinstance(state, Anonymous):
            raise AuthenticationError("no login in progress")
        account = self.store.get_account(state.account_id)
        if account is None:
            raise AuthenticationError("no login in progress")

        self.totp.challenge(account, code)
        authenticated = self.sessions.complete_totp(state)
        self.store.record_auth_time(account.id)
        log_auth_event("login_succeeded", self.logger, account_id=account.id, totp=True)

        trust_secret = None
        if remember_device:
            trust_secret = self.totp.trust_device(account, user_agent)
        return authenticated, trust_secret

    def build_login_redirect(self, params: Mapping[str, Any]) -> str:
        if not params.get("response_type"):
            return self.default_redirect
        path = _safe_local_path(params.get("redirect")) or "/oauth/authorize"
        query = {name: params[name] for name in OAUTH_PARAMS if params.get(name)}
        return f"{path}?{urlencode(query)}"
