from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
import secrets
import time
from typing import Any, Optional, Protocol
from urllib.parse import quote, urlencode

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import ConflictError, InvalidTOTP, ValidationError
from hidauth.service.flood import TOTP, FloodGuard
from hidauth.storage.models import Account, TotpConfig, TrustedDevice

_VERSION_RUN = re.compile(r"(\d+)(?:\.\d+)+")
_WHITESPACE = re.compile(r"\s+")

TOTP_INTERVAL = 30
TOTP_DIGITS = 6


class TotpStore(Protocol):
    def set_totp_secret(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> TotpConfig: ...

    def get_totp_config(self, account_id: str) -> Optional[TotpConfig]: ...

    def disable_totp(self, account_id: str) -> None: ...

    def add_trusted_device(self, account_id: str, device: TrustedDevice) -> None: ...


def normalize_user_agent(user_agent: Optional[str]) -> str:
    """Canonical form of a User-Agent used to recognise the same browser.

    Lower-cases, collapses whitespace and truncates every dotted version
    number to its major component, so ``Chrome/120.0.6099.109`` and
    ``Chrome/120.0.6099.129`` map to the same device after a patch update.
    """
    ua = _WHITESPACE.sub(" ", (user_agent or "").strip().lower())
    return _VERSION_RUN.sub(r"\1", ua)


def device_fingerprint(user_agent: Optional[str]) -> str:
    return hashlib.sha256(normalize_user_agent(user_agent).encode()).hexdigest()


def generate_code(secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL) -> str:
    """RFC 6238 code (HMAC-SHA1, 6 digits) for ``timestamp``."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        get_logger(__name__).warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def verify_code(
    secret: str, code: str, *, now: Optional[float] = None, window: int = 1
) -> bool:
    """Accept the current step and ``window`` adjacent steps for clock skew."""
    now = time.time() if now is None else now
    for offset in range(-window, window + 1):
        generated = generate_code(secret, now + offset * TOTP_INTERVAL)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


class TotpGate:
    """Second-factor challenge with a trusted-device exemption."""

    def __init__(
        self,
        store: TotpStore,
        flood: FloodGuard,
        settings: Settings,
        *,
        logger: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.flood = flood
        self.trust_ttl_days = settings.totp_trust_ttl_days
        self.issuer = settings.totp_issuer
        self.logger = logger or get_logger(__name__)

    def requires_challenge(
        self, account: Account, user_agent: Optional[str], trust_cookie: Optional[str]
    ) -> bool:
        if not account.totp_enabled:
            return False
        if not trust_cookie:
            return True
        device = account.trusted_devices.get(device_fingerprint(user_agent))
        if device is None or device.expired(self.trust_ttl_days):
            return True
        return not hmac.compare_digest(device.secret, trust_cookie)

    def challenge(self, account: Account, code: Optional[str]) -> None:
        """Validate a TOTP code; raises on lockout or mismatch."""
        self.flood.ensure_not_locked(TOTP, account.id)
        normalized = (code or "").replace(" ", "").strip()
        if not normalized:
            raise InvalidTOTP("TOTP code is required")
        cfg = self.store.get_totp_config(account.id)
        if cfg is None or not verify_code(cfg.secret, normalized):
            self.flood.record_failure(TOTP, account.id, account_id=account.id)
            self.logger.warning("totp_challenge_failed", account_id=account.id)
            raise InvalidTOTP()
        self.logger.info("totp_challenge_passed", account_id=account.id)

    def trust_device(self, account: Account, user_agent: Optional[str]) -> str:
        """Remember this browser; returns the secret for the trust cookie."""
        device = TrustedDevice(
            fingerprint=device_fingerprint(user_agent),
            secret=secrets.token_urlsafe(32),
        )
        self.store.add_trusted_device(account.id, device)
        account.trusted_devices[device.fingerprint] = device
        self.logger.info("totp_device_trusted", account_id=account.id)
        return device.secret

    def enroll(self, account: Account) -> dict:
        if account.totp_enabled:
            raise ConflictError("TOTP is already enabled")
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        self.store.set_totp_secret(account.id, secret, enabled=False)
        label = quote(f"{self.issuer}:{account.email}")
        query = urlencode({"secret": secret, "issuer": self.issuer})
        self.logger.info("totp_enrollment_started", account_id=account.id)
        return {"secret": secret, "otpauth_uri": f"otpauth://totp/{label}?{query}"}

    def confirm_enrollment(self, account: Account, code: Optional[str]) -> None:
        cfg = self.store.get_totp_config(account.id)
        if cfg is None:
            raise ValidationError("no pending TOTP enrollment")
        if cfg.enabled:
            raise ConflictError("TOTP is already enabled")
        self.challenge(account, code)
        self.store.set_totp_secret(account.id, cfg.secret, enabled=True)
        account.totp_enabled = True
        self.logger.info("totp_enabled", account_id=account.id)

    def disable(self, account: Account, code: Optional[str]) -> None:
        if not account.totp_enabled:
            raise ValidationError("TOTP is not enabled")
        self.challenge(account, code)
        self.store.disable_totp(account.id)
        account.totp_enabled = False
        account.trusted_devices = {}
        self.logger.info("totp_disabled", account_id=account.id)
