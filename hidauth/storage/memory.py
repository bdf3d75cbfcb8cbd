from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from hidauth.logging import get_logger
from hidauth.storage.common import build_secret_cipher, decrypt_secret, encrypt_secret
from hidauth.storage.errors import ConstraintViolation
from hidauth.storage.models import (
    Account,
    BearerTokenRecord,
    FloodEntry,
    OAuthClient,
    OAuthToken,
    PasswordRecord,
    Session,
    TotpConfig,
    TrustedDevice,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used by tests and single-process deployments.

    All reads and writes go through ``_data_lock``; the state is snapshotted to
    ``fs_root/state/memory_store.json`` after every mutation so a restarted
    process keeps its accounts, clients and API keys.
    """

    def __init__(
        self, fs_root: str = "/tmp/hidauth", *, encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.totp_configs: Dict[str, TotpConfig] = {}
        self.flood_entries: List[FloodEntry] = []
        self.bearer_tokens: Dict[str, BearerTokenRecord] = {}
        self.clients: Dict[str, OAuthClient] = {}
        self.oauth_tokens: Dict[str, OAuthToken] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._totp_cipher = build_secret_cipher(encryption_key)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        """Memory store is always reachable."""

    # accounts
    def create_account(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
        is_admin: bool = False,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation(
                    "email already exists", {"field": "email"}, constraint="account_email_key"
                )
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                email_verified=email_verified,
                is_admin=is_admin,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.email_verified = True
            self._persist_state()
            return account

    def set_admin(self, account_id: str, is_admin: bool) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_admin = is_admin
            self._persist_state()
            return account

    def record_auth_time(self, account_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.auth_time = when or utcnow()
            self._persist_state()

    def save_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = PasswordRecord(
                account_id=account_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            account.password_expires_at = expires_at
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # authorized OAuth clients
    def add_authorized_client(self, account_id: str, client_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if client_id not in account.authorized_clients:
                account.authorized_clients.append(client_id)
                self._persist_state()
            return account

    def remove_authorized_client(self, account_id: str, client_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or client_id not in account.authorized_clients:
                return False
            account.authorized_clients.remove(client_id)
            self._persist_state()
            return True

    def list_accounts_by_authorized_client(self, client_id: str) -> List[Account]:
        with self._data_lock:
            return [
                a for a in self.accounts.values() if client_id in a.authorized_clients
            ]

    # TOTP secrets and trusted devices
    def set_totp_secret(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> TotpConfig:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found for totp", {"account_id": account_id})
            record = TotpConfig(
                account_id=account_id,
                secret=encrypt_secret(self._totp_cipher, secret),
                enabled=enabled,
            )
            self.totp_configs[account_id] = record
            account.totp_enabled = enabled
            self._persist_state()
            return TotpConfig(
                account_id=account_id,
                secret=secret,
                enabled=enabled,
                created_at=record.created_at,
            )

    def get_totp_config(self, account_id: str) -> Optional[TotpConfig]:
        with self._data_lock:
            cfg = self.totp_configs.get(account_id)
            if not cfg:
                return None
            return TotpConfig(
                account_id=cfg.account_id,
                secret=decrypt_secret(self._totp_cipher, cfg.secret),
                enabled=cfg.enabled,
                created_at=cfg.created_at,
            )

    def disable_totp(self, account_id: str) -> None:
        with self._data_lock:
            self.totp_configs.pop(account_id, None)
            account = self.accounts.get(account_id)
            if account:
                account.totp_enabled = False
                account.trusted_devices = {}
            self._persist_state()

    def add_trusted_device(self, account_id: str, device: TrustedDevice) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            # One entry per fingerprint; a fresh grant replaces the old one
            account.trusted_devices[device.fingerprint] = device
            self._persist_state()

    # flood entries
    def append_flood_entry(self, entry: FloodEntry) -> None:
        with self._data_lock:
            self.flood_entries.append(entry)
            self._persist_state()

    def count_flood_entries(self, kind: str, identity: str, since: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for entry in self.flood_entries
                if entry.kind == kind
                and entry.identity == identity
                and entry.created_at >= since
            )

    # bearer token records
    def upsert_bearer_token(
        self, token: str, account_id: str, *, blacklisted: bool = False
    ) -> BearerTokenRecord:
        with self._data_lock:
            record = self.bearer_tokens.get(token)
            if record is None:
                record = BearerTokenRecord(
                    token=token, account_id=account_id, blacklisted=blacklisted
                )
                self.bearer_tokens[token] = record
            else:
                record.blacklisted = blacklisted
            self._persist_state()
            return record

    def get_bearer_token(self, token: str) -> Optional[BearerTokenRecord]:
        with self._data_lock:
            return self.bearer_tokens.get(token)

    def list_bearer_tokens(self, account_id: str) -> List[BearerTokenRecord]:
        with self._data_lock:
            return sorted(
                (r for r in self.bearer_tokens.values() if r.account_id == account_id),
                key=lambda r: r.created_at,
                reverse=True,
            )

    # OAuth clients
    def create_client(
        self,
        client_id: str,
        secret: str,
        redirect_uri: str,
        *,
        redirect_urls: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> OAuthClient:
        with self._data_lock:
            if client_id in self.clients:
                raise ConstraintViolation(
                    "client already exists", {"client_id": client_id}, constraint="oauth_client_pkey"
                )
            client = OAuthClient(
                id=client_id,
                secret=secret,
                redirect_uri=redirect_uri,
                redirect_urls=list(redirect_urls or []),
                name=name,
            )
            self.clients[client_id] = client
            self._persist_state()
            return client

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._data_lock:
            return self.clients.get(client_id)

    # OAuth codes and refresh tokens
    def create_oauth_token(self, token: OAuthToken) -> OAuthToken:
        with self._data_lock:
            if token.token in self.oauth_tokens:
                raise ConstraintViolation("oauth token collision", {"type": token.type})
            self.oauth_tokens[token.token] = token
            self._persist_state()
            return token

    def consume_oauth_token(self, token: str, token_type: str) -> Optional[OAuthToken]:
        """Look up a code or refresh token.

        Codes are removed in the same critical section that reads them so two
        concurrent exchanges cannot both succeed; refresh tokens stay in place.
        """
        with self._data_lock:
            record = self.oauth_tokens.get(token)
            if record is None or record.type != token_type:
                return None
            if token_type == "code":
                self.oauth_tokens.pop(token, None)
                self._persist_state()
            return record

    def revoke_oauth_tokens(self, account_id: str, client_id: str) -> int:
        with self._data_lock:
            stale = [
                key
                for key, record in self.oauth_tokens.items()
                if record.account_id == account_id and record.client_id == client_id
            ]
            for key in stale:
                self.oauth_tokens.pop(key, None)
            if stale:
                self._persist_state()
            return len(stale)

    # browser sessions
    def create_session(
        self,
        account_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        totp_verified: bool = False,
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            sess = Session.new(
                account_id=account_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                totp_verified=totp_verified,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def mark_session_verified(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.totp_verified = True
            self._persist_state()

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            self.sessions.pop(session_id, None)
            self._persist_state()

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _persist_state(self) -> None:
        dt = self._serialize_datetime
        state = {
            "accounts": [
                {
                    "id": a.id,
                    "email": a.email,
                    "email_verified": a.email_verified,
                    "password_expires_at": dt(a.password_expires_at),
                    "totp_enabled": a.totp_enabled,
                    "trusted_devices": [
                        {
                            "fingerprint": d.fingerprint,
                            "secret": d.secret,
                            "created_at": dt(d.created_at),
                        }
                        for d in a.trusted_devices.values()
                    ],
                    "authorized_clients": a.authorized_clients,
                    "is_admin": a.is_admin,
                    "name": a.name,
                    "created_at": dt(a.created_at),
                    "auth_time": dt(a.auth_time),
                }
                for a in self.accounts.values()
            ],
            "credentials": [
                {
                    "account_id": c.account_id,
                    "password_hash": c.password_hash,
                    "password_algo": c.password_algo,
                    "last_updated_at": dt(c.last_updated_at),
                }
                for c in self.credentials.values()
            ],
            "totp_configs": [
                {
                    "account_id": t.account_id,
                    "secret": t.secret,
                    "enabled": t.enabled,
                    "created_at": dt(t.created_at),
                }
                for t in self.totp_configs.values()
            ],
            "flood_entries": [
                {
                    "kind": f.kind,
                    "identity": f.identity,
                    "created_at": dt(f.created_at),
                    "account_id": f.account_id,
                }
                for f in self.flood_entries
            ],
            "bearer_tokens": [
                {
                    "token": b.token,
                    "account_id": b.account_id,
                    "blacklisted": b.blacklisted,
                    "created_at": dt(b.created_at),
                }
                for b in self.bearer_tokens.values()
            ],
            "clients": [
                {
                    "id": c.id,
                    "secret": c.secret,
                    "redirect_uri": c.redirect_uri,
                    "redirect_urls": c.redirect_urls,
                    "name": c.name,
                    "created_at": dt(c.created_at),
                }
                for c in self.clients.values()
            ],
            "oauth_tokens": [
                {
                    "token": o.token,
                    "type": o.type,
                    "client_id": o.client_id,
                    "account_id": o.account_id,
                    "expires_at": dt(o.expires_at),
                    "redirect_uri": o.redirect_uri,
                    "scope": o.scope,
                    "nonce": o.nonce,
                    "created_at": dt(o.created_at),
                }
                for o in self.oauth_tokens.values()
            ],
            "sessions": [
                {
                    "id": s.id,
                    "account_id": s.account_id,
                    "created_at": dt(s.created_at),
                    "expires_at": dt(s.expires_at),
                    "totp_verified": s.totp_verified,
                    "user_agent": s.user_agent,
                }
                for s in self.sessions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        dt = self._deserialize_datetime
        self.accounts = {}
        for raw in data.get("accounts", []):
            devices = {
                d["fingerprint"]: TrustedDevice(
                    fingerprint=d["fingerprint"],
                    secret=d["secret"],
                    created_at=dt(d["created_at"]),
                )
                for d in raw.get("trusted_devices", [])
            }
            self.accounts[raw["id"]] = Account(
                id=raw["id"],
                email=raw["email"],
                email_verified=raw.get("email_verified", False),
                password_expires_at=dt(raw.get("password_expires_at")),
                totp_enabled=raw.get("totp_enabled", False),
                trusted_devices=devices,
                authorized_clients=list(raw.get("authorized_clients", [])),
                is_admin=raw.get("is_admin", False),
                name=raw.get("name"),
                created_at=dt(raw["created_at"]),
                auth_time=dt(raw.get("auth_time")),
            )
        self.credentials = {
            c["account_id"]: PasswordRecord(
                account_id=c["account_id"],
                password_hash=c["password_hash"],
                password_algo=c.get("password_algo", "argon2id"),
                last_updated_at=dt(c["last_updated_at"]),
            )
            for c in data.get("credentials", [])
        }
        self.totp_configs = {
            t["account_id"]: TotpConfig(
                account_id=t["account_id"],
                secret=t["secret"],
                enabled=t.get("enabled", False),
                created_at=dt(t["created_at"]),
            )
            for t in data.get("totp_configs", [])
        }
        self.flood_entries = [
            FloodEntry(
                kind=f["kind"],
                identity=f["identity"],
                created_at=dt(f["created_at"]),
                account_id=f.get("account_id"),
            )
            for f in data.get("flood_entries", [])
        ]
        self.bearer_tokens = {
            b["token"]: BearerTokenRecord(
                token=b["token"],
                account_id=b["account_id"],
                blacklisted=b.get("blacklisted", False),
                created_at=dt(b["created_at"]),
            )
            for b in data.get("bearer_tokens", [])
        }
        self.clients = {
            c["id"]: OAuthClient(
                id=c["id"],
                secret=c["secret"],
                redirect_uri=c["redirect_uri"],
                redirect_urls=list(c.get("redirect_urls", [])),
                name=c.get("name"),
                created_at=dt(c["created_at"]),
            )
            for c in data.get("clients", [])
        }
        self.oauth_tokens = {
            o["token"]: OAuthToken(
                token=o["token"],
                type=o["type"],
                client_id=o["client_id"],
                account_id=o["account_id"],
                expires_at=dt(o["expires_at"]),
                redirect_uri=o.get("redirect_uri"),
                scope=o.get("scope"),
                nonce=o.get("nonce"),
                created_at=dt(o["created_at"]),
            )
            for o in data.get("oauth_tokens", [])
        }
        self.sessions = {
            s["id"]: Session(
                id=s["id"],
                account_id=s["account_id"],
                created_at=dt(s["created_at"]),
                expires_at=dt(s["expires_at"]),
                totp_verified=s.get("totp_verified", False),
                user_agent=s.get("user_agent"),
            )
            for s in data.get("sessions", [])
        }
        return True
