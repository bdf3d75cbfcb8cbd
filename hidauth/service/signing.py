from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Any, Optional, Tuple
from urllib.parse import urlsplit

from hidauth.config import Settings
from hidauth.logging import get_logger
from hidauth.service.errors import ExpiredToken, InvalidToken, ValidationError

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _url_parts(url: str) -> Tuple[str, str, int]:
    """Resource (path + query without any bewit), host and port of ``url``."""
    parts = urlsplit(url)
    if not parts.hostname:
        raise ValidationError("url must be absolute")
    # raw query text is signed as sent; only the bewit pair is dropped
    query = "&".join(
        pair for pair in parts.query.split("&") if pair and pair.split("=", 1)[0] != "bewit"
    )
    resource = parts.path or "/"
    if query:
        resource += "?" + query
    port = parts.port or _DEFAULT_PORTS.get(parts.scheme, 80)
    return resource, parts.hostname.lower(), port


class RequestSigner:
    """Short-lived Hawk bewits for authenticated file downloads."""

    def __init__(self, settings: Settings, *, logger: Optional[Any] = None) -> None:
        self.key = settings.signing_secret.encode()
        self.ttl_seconds = settings.signed_url_ttl_seconds
        self.logger = logger or get_logger(__name__)

    def _mac(self, exp: int, resource: str, host: str, port: int, ext: str = "") -> str:
        normalized = (
            f"hawk.1.bewit\n{exp}\n\nGET\n{resource}\n{host}\n{port}\n\n{ext}\n"
        )
        digest = hmac.new(self.key, normalized.encode(), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def sign(self, url: Optional[str], account_id: str, *, now: Optional[float] = None) -> str:
        if not url:
            self.logger.warning("signed_request_missing_url", account_id=account_id)
            raise ValidationError("Missing url")
        resource, host, port = _url_parts(url)
        exp = int(time.time() if now is None else now) + self.ttl_seconds
        mac = self._mac(exp, resource, host, port)
        self.logger.info("signed_request_issued", account_id=account_id, resource=resource)
        return _b64url_encode(f"{account_id}\\{exp}\\{mac}\\".encode())

    def verify(self, url: str, bewit: Optional[str], *, now: Optional[float] = None) -> str:
        """Return the account id the bewit was issued to."""
        if not bewit:
            raise InvalidToken("missing bewit")
        try:
            decoded = _b64url_decode(bewit).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise InvalidToken("malformed bewit") from exc
        parts = decoded.split("\\")
        if len(parts) != 4 or not parts[0] or not parts[1].isdigit():
            raise InvalidToken("malformed bewit")
        account_id, exp_raw, mac, ext = parts
        exp = int(exp_raw)
        if exp <= int(time.time() if now is None else now):
            raise ExpiredToken("bewit expired")
        resource, host, port = _url_parts(url)
        expected = self._mac(exp, resource, host, port, ext)
        if not hmac.compare_digest(expected, mac):
            self.logger.warning("signed_request_bad_mac", account_id=account_id)
            raise InvalidToken("invalid bewit")
        return account_id
