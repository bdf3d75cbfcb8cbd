from __future__ import annotations

import hashlib
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import ExpiredSignatureError, JWTError, jwk, jwt

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import (
    ExpiredToken,
    ForbiddenError,
    InvalidToken,
    ValidationError,
)
from hidauth.storage.models import BearerTokenRecord, utcnow

ALGORITHM = "RS256"

logger = get_logger(__name__)


class BearerTokenStore(Protocol):
    def upsert_bearer_token(
        self, token: str, account_id: str, *, blacklisted: bool = False
    ) -> BearerTokenRecord: ...

    def get_bearer_token(self, token: str) -> Optional[BearerTokenRecord]: ...

    def list_bearer_tokens(self, account_id: str) -> List[BearerTokenRecord]: ...


@dataclass
class SigningKeys:
    private_pem: str
    public_pem: str
    kid: str


def _key_id(public_pem: str) -> str:
    return hashlib.sha256(public_pem.encode()).hexdigest()[:16]


def _read_pem(inline: Optional[str], path: Optional[str]) -> Optional[str]:
    if inline:
        return inline.replace("\\n", "\n")
    if path:
        return Path(path).read_text()
    return None


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Resolve the RS256 key pair.

    Explicit PEM values or paths win; otherwise a pair is generated once and
    kept under ``SHARED_FS_ROOT/keys`` so issued tokens survive restarts.
    """
    private_pem = _read_pem(settings.jwt_private_key, settings.jwt_private_key_path)
    public_pem = _read_pem(settings.jwt_public_key, settings.jwt_public_key_path)

    if private_pem is None:
        key_dir = Path(settings.shared_fs_root) / "keys"
        private_path = key_dir / "jwt_private.pem"
        public_path = key_dir / "jwt_public.pem"
        if private_path.exists() and not private_path.is_symlink():
            private_pem = private_path.read_text()
        else:
            key_dir.mkdir(parents=True, exist_ok=True)
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
            private_bytes = private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
            _write_private(private_path, private_bytes)
            private_pem = private_bytes.decode()
            logger.info("signing_key_generated", path=str(private_path))
        if public_pem is None and public_path.exists():
            public_pem = public_path.read_text()

    if public_pem is None:
        private_key = serialization.load_pem_private_key(private_pem.encode(), password=None)
        public_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode()
        )
        if not settings.jwt_private_key and not settings.jwt_private_key_path:
            (Path(settings.shared_fs_root) / "keys" / "jwt_public.pem").write_text(public_pem)

    return SigningKeys(
        private_pem=private_pem,
        public_pem=public_pem,
        kid=settings.jwt_key_id or _key_id(public_pem),
    )


class TokenService:
    """RS256 bearer tokens, API-key persistence and blacklisting."""

    def __init__(
        self,
        store: BearerTokenStore,
        keys: SigningKeys,
        issuer: str,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.keys = keys
        self.issuer = issuer
        self.logger = logger or get_logger(__name__)

    def issue(self, claims: dict) -> str:
        """Sign ``claims``; tokens without ``exp`` are recorded as API keys."""
        if not claims.get("id"):
            raise ValidationError("token claims must carry an id")
        payload = dict(claims)
        payload["id"] = str(payload["id"])
        payload.setdefault("iat", int(utcnow().timestamp()))
        payload.setdefault("iss", self.issuer)
        payload.setdefault("jti", uuid.uuid4().hex)
        token = jwt.encode(
            payload,
            self.keys.private_pem,
            algorithm=ALGORITHM,
            headers={"kid": self.keys.kid},
        )
        if "exp" not in payload:
            self.store.upsert_bearer_token(token, payload["id"], blacklisted=False)
            self.logger.info("api_key_created", account_id=payload["id"])
        return token

    def verify(self, token: Optional[str]) -> dict:
        if not token:
            raise InvalidToken()
        try:
            return jwt.decode(
                token,
                self.keys.public_pem,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredToken() from exc
        except JWTError as exc:
            self.logger.info("token_verification_failed", error=str(exc))
            raise InvalidToken() from exc

    def authenticate(self, token: Optional[str]) -> dict:
        """Verify and reject blacklisted tokens."""
        claims = self.verify(token)
        record = self.store.get_bearer_token(token)
        if record and record.blacklisted:
            self.logger.info("blacklisted_token_rejected", account_id=record.account_id)
            raise InvalidToken("token has been revoked")
        return claims

    def is_valid(self, token: Optional[str]) -> bool:
        try:
            self.authenticate(token)
        except InvalidToken:
            return False
        return True

    def blacklist(self, token: Optional[str], requesting_account_id: str) -> BearerTokenRecord:
        if not token:
            raise ValidationError("Missing token")
        claims = self.verify(token)
        if str(claims.get("id")) != str(requesting_account_id):
            self.logger.warning(
                "token_blacklist_forbidden",
                account_id=requesting_account_id,
                owner_id=claims.get("id"),
            )
            raise ForbiddenError(
                "Could not blacklist this token because you did not generate it"
            )
        record = self.store.upsert_bearer_token(token, str(claims["id"]), blacklisted=True)
        self.logger.info("token_blacklisted", account_id=requesting_account_id)
        return record

    def list_tokens(self, account_id: str) -> List[BearerTokenRecord]:
        return self.store.list_bearer_tokens(account_id)

    def jwks(self) -> dict:
        key = jwk.construct(self.keys.public_pem, ALGORITHM).to_dict()
        key.update({"use": "sig", "kid": self.keys.kid, "alg": ALGORITHM})
        return {"keys": [key]}
