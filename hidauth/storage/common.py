"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from hidauth.logging import get_logger

logger = get_logger(__name__)


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: Optional[str]) -> Fernet:
    """Fernet cipher for TOTP secrets at rest, keyed by the signing secret."""
    if not key_material:
        from hidauth.config import get_settings

        key_material = get_settings().signing_secret
    try:
        return Fernet(derive_cipher_key(key_material))
    except ValueError as exc:
        raise RuntimeError("Unable to initialize TOTP cipher") from exc


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # Rows written before encryption was enabled hold the raw secret
        logger.warning("totp_secret_decrypt_failed")
        return secret
