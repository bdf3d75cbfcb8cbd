from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from hidauth.logging import get_logger
from hidauth.service.errors import TransientStoreError
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        password_expires_at TIMESTAMPTZ,
        totp_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        auth_time TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_totp (
        account_id TEXT PRIMARY KEY REFERENCES account(id),
        secret TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS trusted_device (
        account_id TEXT NOT NULL REFERENCES account(id),
        fingerprint TEXT NOT NULL,
        secret TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authorized_client (
        account_id TEXT NOT NULL REFERENCES account(id),
        client_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (account_id, client_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flood_entry (
        id BIGSERIAL PRIMARY KEY,
        kind TEXT NOT NULL,
        identity TEXT NOT NULL,
        account_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS flood_entry_lookup_idx ON flood_entry (kind, identity, created_at)",
    """
    CREATE TABLE IF NOT EXISTS bearer_token (
        token TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        blacklisted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_client (
        id TEXT PRIMARY KEY,
        secret TEXT NOT NULL,
        redirect_uri TEXT NOT NULL,
        redirect_urls TEXT[] NOT NULL DEFAULT '{}',
        name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_token (
        token TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        client_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        redirect_uri TEXT,
        scope TEXT,
        nonce TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id),
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        totp_verified BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for accounts, clients, tokens and sessions."""

    def __init__(
        self,
        dsn: str,
        *,
        encryption_key: str | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
            },
        )
        self._totp_cipher = build_secret_cipher(encryption_key)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection, mapping outages to ``TransientStoreError``."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise TransientStoreError() from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise TransientStoreError() from exc

    def _ensure_schema(self) -> None:
        """Create the tables this store needs if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts
    def _account_from_row(self, conn, row: dict) -> Account:
        devices = conn.execute(
            "SELECT fingerprint, secret, created_at FROM trusted_device WHERE account_id = %s",
            (row["id"],),
        ).fetchall()
        clients = conn.execute(
            "SELECT client_id FROM authorized_client WHERE account_id = %s ORDER BY created_at",
            (row["id"],),
        ).fetchall()
        return Account(
            id=str(row["id"]),
            email=row["email"],
            email_verified=bool(row.get("email_verified", False)),
            password_expires_at=row.get("password_expires_at"),
            totp_enabled=bool(row.get("totp_enabled", False)),
            trusted_devices={
                d["fingerprint"]: TrustedDevice(
                    fingerprint=d["fingerprint"],
                    secret=d["secret"],
                    created_at=d["created_at"],
                )
                for d in devices
            },
            authorized_clients=[c["client_id"] for c in clients],
            is_admin=bool(row.get("is_admin", False)),
            name=row.get("name"),
            created_at=row.get("created_at") or utcnow(),
            auth_time=row.get("auth_time"),
        )

    def create_account(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        email_verified: bool = False,
        is_admin: bool = False,
    ) -> Account:
        account_id = str(uuid.uuid4())
        normalized = email.strip().lower()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, email_verified, is_admin, name)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account_id, normalized, email_verified, is_admin, name),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists",
                {"field": "email"},
                constraint=exc.diag.constraint_name,
            ) from exc
        return Account(
            id=account_id,
            email=normalized,
            name=name,
            email_verified=email_verified,
            is_admin=is_admin,
        )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
            if not row:
                return None
            return self._account_from_row(conn, row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE lower(email) = %s", (email.strip().lower(),)
            ).fetchone()
            if not row:
                return None
            return self._account_from_row(conn, row)

    def mark_email_verified(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET email_verified = TRUE WHERE id = %s RETURNING *",
                (account_id,),
            ).fetchone()
            if not row:
                return None
            return self._account_from_row(conn, row)

    def set_admin(self, account_id: str, is_admin: bool) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET is_admin = %s WHERE id = %s RETURNING *",
                (is_admin, account_id),
            ).fetchone()
            if not row:
                return None
            return self._account_from_row(conn, row)

    def record_auth_time(self, account_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET auth_time = %s WHERE id = %s",
                (when or utcnow(), account_id),
            )

    def save_password(
        self,
        account_id: str,
        password_hash: str,
        password_algo: str,
        *,
        expires_at: Optional[datetime] = None,
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
                conn.execute(
                    "UPDATE account SET password_expires_at = %s WHERE id = %s",
                    (expires_at, account_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_credential WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            account_id=str(row["account_id"]),
            password_hash=str(row["password_hash"]),
            password_algo=str(row["password_algo"]),
            last_updated_at=row["last_updated_at"],
        )

    # authorized OAuth clients
    def add_authorized_client(self, account_id: str, client_id: str) -> Optional[Account]:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO authorized_client (account_id, client_id)
                VALUES (%s, %s)
                ON CONFLICT (account_id, client_id) DO NOTHING
                """,
                (account_id, client_id),
            )
        return self.get_account(account_id)

    def remove_authorized_client(self, account_id: str, client_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM authorized_client WHERE account_id = %s AND client_id = %s",
                (account_id, client_id),
            )
            return cur.rowcount > 0

    def list_accounts_by_authorized_client(self, client_id: str) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT a.* FROM account a
                JOIN authorized_client c ON c.account_id = a.id
                WHERE c.client_id = %s
                """,
                (client_id,),
            ).fetchall()
            return [self._account_from_row(conn, row) for row in rows]

    # TOTP secrets and trusted devices
    def set_totp_secret(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> TotpConfig:
        record = TotpConfig(account_id=account_id, secret=secret, enabled=enabled)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_totp (account_id, secret, enabled, created_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (account_id) DO UPDATE SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled
                """,
                (account_id, encrypt_secret(self._totp_cipher, secret), enabled),
            )
            conn.execute(
                "UPDATE account SET totp_enabled = %s WHERE id = %s", (enabled, account_id)
            )
        return record

    def get_totp_config(self, account_id: str) -> Optional[TotpConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_totp WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return TotpConfig(
            account_id=row["account_id"],
            secret=decrypt_secret(self._totp_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            created_at=row["created_at"],
        )

    def disable_totp(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM account_totp WHERE account_id = %s", (account_id,))
            conn.execute("DELETE FROM trusted_device WHERE account_id = %s", (account_id,))
            conn.execute(
                "UPDATE account SET totp_enabled = FALSE WHERE id = %s", (account_id,)
            )

    def add_trusted_device(self, account_id: str, device: TrustedDevice) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO trusted_device (account_id, fingerprint, secret, created_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (account_id, fingerprint) DO UPDATE
                    SET secret = EXCLUDED.secret, created_at = EXCLUDED.created_at
                    """,
                    (account_id, device.fingerprint, device.secret, device.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    # flood entries
    def append_flood_entry(self, entry: FloodEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO flood_entry (kind, identity, account_id, created_at) VALUES (%s, %s, %s, %s)",
                (entry.kind, entry.identity, entry.account_id, entry.created_at),
            )

    def count_flood_entries(self, kind: str, identity: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(*) AS attempts FROM flood_entry
                WHERE kind = %s AND identity = %s AND created_at >= %s
                """,
                (kind, identity, since),
            ).fetchone()
        return int(row["attempts"]) if row else 0

    # bearer token records
    @staticmethod
    def _bearer_from_row(row: dict) -> BearerTokenRecord:
        return BearerTokenRecord(
            token=row["token"],
            account_id=str(row["account_id"]),
            blacklisted=bool(row["blacklisted"]),
            created_at=row["created_at"],
        )

    def upsert_bearer_token(
        self, token: str, account_id: str, *, blacklisted: bool = False
    ) -> BearerTokenRecord:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO bearer_token (token, account_id, blacklisted)
                VALUES (%s, %s, %s)
                ON CONFLICT (token) DO UPDATE SET blacklisted = EXCLUDED.blacklisted
                RETURNING *
                """,
                (token, account_id, blacklisted),
            ).fetchone()
        return self._bearer_from_row(row)

    def get_bearer_token(self, token: str) -> Optional[BearerTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bearer_token WHERE token = %s", (token,)
            ).fetchone()
        return self._bearer_from_row(row) if row else None

    def list_bearer_tokens(self, account_id: str) -> List[BearerTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM bearer_token WHERE account_id = %s ORDER BY created_at DESC",
                (account_id,),
            ).fetchall()
        return [self._bearer_from_row(row) for row in rows]

    # OAuth clients
    @staticmethod
    def _client_from_row(row: dict) -> OAuthClient:
        return OAuthClient(
            id=row["id"],
            secret=row["secret"],
            redirect_uri=row["redirect_uri"],
            redirect_urls=list(row.get("redirect_urls") or []),
            name=row.get("name"),
            created_at=row["created_at"],
        )

    def create_client(
        self,
        client_id: str,
        secret: str,
        redirect_uri: str,
        *,
        redirect_urls: Optional[List[str]] = None,
        name: Optional[str] = None,
    ) -> OAuthClient:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO oauth_client (id, secret, redirect_uri, redirect_urls, name)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (client_id, secret, redirect_uri, list(redirect_urls or []), name),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "client already exists",
                {"client_id": client_id},
                constraint=exc.diag.constraint_name,
            ) from exc
        return self._client_from_row(row)

    def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_client WHERE id = %s", (client_id,)
            ).fetchone()
        return self._client_from_row(row) if row else None

    # OAuth codes and refresh tokens
    @staticmethod
    def _oauth_token_from_row(row: dict) -> OAuthToken:
        return OAuthToken(
            token=row["token"],
            type=row["type"],
            client_id=row["client_id"],
            account_id=str(row["account_id"]),
            expires_at=row["expires_at"],
            redirect_uri=row.get("redirect_uri"),
            scope=row.get("scope"),
            nonce=row.get("nonce"),
            created_at=row["created_at"],
        )

    def create_oauth_token(self, token: OAuthToken) -> OAuthToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO oauth_token (token, type, client_id, account_id, expires_at, redirect_uri, scope, nonce, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        token.type,
                        token.client_id,
                        token.account_id,
                        token.expires_at,
                        token.redirect_uri,
                        token.scope,
                        token.nonce,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("oauth token collision", {"type": token.type})
        return token

    def consume_oauth_token(self, token: str, token_type: str) -> Optional[OAuthToken]:
        """Look up a code or refresh token; codes are deleted by the same statement."""
        with self._connect() as conn:
            if token_type == "code":
                row = conn.execute(
                    "DELETE FROM oauth_token WHERE token = %s AND type = %s RETURNING *",
                    (token, token_type),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM oauth_token WHERE token = %s AND type = %s",
                    (token, token_type),
                ).fetchone()
        return self._oauth_token_from_row(row) if row else None

    def revoke_oauth_tokens(self, account_id: str, client_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM oauth_token WHERE account_id = %s AND client_id = %s",
                (account_id, client_id),
            )
            return cur.rowcount

    # browser sessions
    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=row["id"],
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            totp_verified=bool(row.get("totp_verified", False)),
            user_agent=row.get("user_agent"),
        )

    def create_session(
        self,
        account_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        totp_verified: bool = False,
    ) -> Session:
        sess = Session.new(
            account_id=account_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            totp_verified=totp_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, created_at, expires_at, totp_verified, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.account_id,
                        sess.created_at,
                        sess.expires_at,
                        sess.totp_verified,
                        sess.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def mark_session_verified(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET totp_verified = TRUE WHERE id = %s", (session_id,)
            )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
