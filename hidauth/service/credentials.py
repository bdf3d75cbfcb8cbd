from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import (
    EmailNotVerified,
    InvalidCredentials,
    MissingCredentials,
    PasswordExpired,
)
from hidauth.service.flood import LOGIN, FloodGuard
from hidauth.storage.models import Account, PasswordRecord, utcnow


class AccountStore(Protocol):
    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def save_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]: ...


class CredentialVerifier:
    """Email + password check with lockout, verification and expiry gates."""

    def __init__(
        self,
        store: AccountStore,
        flood: FloodGuard,
        settings: Settings,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.flood = flood
        self.password_max_age = timedelta(days=settings.password_max_age_days)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger or get_logger(__name__)

    def verify(self, email: Optional[str], password: Optional[str]) -> Account:
        """Return the account for a correct email/password pair.

        Checks run in a fixed order and stop at the first failure: lockout,
        account lookup, email verification, password expiry, then the hash.
        Only a wrong password counts toward the lockout.
        """
        if not email or not password:
            raise MissingCredentials()
        normalized = email.strip().lower()

        self.flood.ensure_not_locked(LOGIN, normalized)

        account = self.store.get_account_by_email(normalized)
        if not account:
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentials()
        if not account.email_verified:
            self.logger.info("login_failed", reason="email_not_verified", account_id=account.id)
            raise EmailNotVerified()
        if account.password_expired():
            self.logger.info("login_failed", reason="password_expired", account_id=account.id)
            raise PasswordExpired()
        if not self.check_password(account.id, password):
            self.flood.record_failure(LOGIN, normalized, account_id=account.id)
            self.logger.info("login_failed", reason="wrong_password", account_id=account.id)
            raise InvalidCredentials()
        return account

    def check_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        if record.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", account_id=account_id, algo=record.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def set_password(self, account_id: str, password: str) -> datetime:
        """Hash and store a new password; returns its expiry."""
        pwd_hash, algo = self.hash_password(password)
        expires_at = utcnow() + self.password_max_age
        self.store.save_password(account_id, pwd_hash, algo, expires_at=expires_at)
        self.logger.info("password_set", account_id=account_id)
        return expires_at
