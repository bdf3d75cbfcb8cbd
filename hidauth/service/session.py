from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import AuthenticationError
from hidauth.storage.models import Account, Session


class SessionStore(Protocol):
    def create_session(
        self,
        account_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        totp_verified: bool = False,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def mark_session_verified(self, session_id: str) -> None: ...

    def revoke_session(self, session_id: str) -> None: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...


@dataclass(frozen=True)
class Anonymous:
    pass


@dataclass(frozen=True)
class AwaitingTOTP:
    account_id: str
    session_id: str


@dataclass(frozen=True)
class Authenticated:
    account_id: str
    session_id: str


SessionState = Union[Anonymous, AwaitingTOTP, Authenticated]

ANONYMOUS = Anonymous()


class SessionBridge:
    """Maps the browser session cookie onto a login state.

    The server-side session only records who logged in and whether the
    second factor is done; it never holds token claims.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.ttl_minutes = settings.session_ttl_minutes
        self.logger = logger or get_logger(__name__)

    def resolve(self, session_id: Optional[str]) -> SessionState:
        if not session_id:
            return ANONYMOUS
        session = self.store.get_session(session_id)
        if session is None:
            return ANONYMOUS
        if session.expired():
            self.store.revoke_session(session_id)
            return ANONYMOUS
        if self.store.get_account(session.account_id) is None:
            return ANONYMOUS
        if session.totp_verified:
            return Authenticated(account_id=session.account_id, session_id=session.id)
        return AwaitingTOTP(account_id=session.account_id, session_id=session.id)

    def begin(
        self,
        account: Account,
        *,
        totp_verified: bool,
        user_agent: Optional[str] = None,
    ) -> SessionState:
        session = self.store.create_session(
            account.id,
            ttl_minutes=self.ttl_minutes,
            user_agent=user_agent,
            totp_verified=totp_verified,
        )
        self.logger.info(
            "session_started", account_id=account.id, totp_verified=totp_verified
        )
        if totp_verified:
            return Authenticated(account_id=account.id, session_id=session.id)
        return AwaitingTOTP(account_id=account.id, session_id=session.id)

    def complete_totp(self, state: SessionState) -> Authenticated:
        if isinstance(state, Authenticated):
            return state
        if not isinstance(state, AwaitingTOTP):
            raise AuthenticationError("no login in progress")
        self.store.mark_session_verified(state.session_id)
        return Authenticated(account_id=state.account_id, session_id=state.session_id)

    def end(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self.store.revoke_session(session_id)
        self.logger.info("session_ended")
