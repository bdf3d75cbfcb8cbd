from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hidauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/hidauth", "DATABASE_URL"
    )
    database_timeout_seconds: float = env_field(5.0, "DATABASE_TIMEOUT_SECONDS")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/hidauth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (memory fallbacks, runtime resets).",
    )
    bind_host: str = env_field("127.0.0.1", "BIND_HOST")
    bind_port: int = env_field(8000, "BIND_PORT")
    root_url: str = env_field(
        "http://localhost:8000",
        "ROOT_URL",
        description="Public base URL; used as JWT issuer and in the discovery document",
    )

    # Signing material
    signing_secret: str = env_field(None, "SIGNING_SECRET", validate_default=True)
    jwt_private_key: str | None = env_field(None, "JWT_PRIVATE_KEY")
    jwt_public_key: str | None = env_field(None, "JWT_PUBLIC_KEY")
    jwt_private_key_path: str | None = env_field(None, "JWT_PRIVATE_KEY_PATH")
    jwt_public_key_path: str | None = env_field(None, "JWT_PUBLIC_KEY_PATH")
    jwt_key_id: str | None = env_field(None, "JWT_KEY_ID")

    # Brute-force lockout
    flood_max_attempts: int = env_field(
        5,
        "FLOOD_MAX_ATTEMPTS",
        description="Failed attempts within the window that lock an identity",
    )
    flood_window_seconds: int = env_field(300, "FLOOD_WINDOW_SECONDS")

    # Passwords and second factor
    password_max_age_days: int = env_field(180, "PASSWORD_MAX_AGE_DAYS")
    totp_issuer: str = env_field("Humanitarian ID", "TOTP_ISSUER")
    totp_trust_ttl_days: int = env_field(30, "TOTP_TRUST_TTL_DAYS")
    totp_trust_cookie: str = env_field("x-hid-totp-trust", "TOTP_TRUST_COOKIE")

    # Browser session
    session_cookie: str = env_field("session_id", "SESSION_COOKIE")
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    login_default_redirect: str = env_field("/user", "LOGIN_DEFAULT_REDIRECT")

    # OAuth2
    oauth_code_ttl_seconds: int = env_field(600, "OAUTH_CODE_TTL_SECONDS")
    oauth_transaction_ttl_seconds: int = env_field(600, "OAUTH_TRANSACTION_TTL_SECONDS")
    oauth_access_token_ttl_seconds: int = env_field(3600, "OAUTH_ACCESS_TOKEN_TTL_SECONDS")
    oauth_refresh_token_ttl_days: int = env_field(30, "OAUTH_REFRESH_TOKEN_TTL_DAYS")

    # Signed download URLs
    signed_url_ttl_seconds: int = env_field(300, "SIGNED_URL_TTL_SECONDS")

    # Route-level throttling (token bucket, per minute)
    login_rate_limit_per_minute: int = env_field(30, "LOGIN_RATE_LIMIT_PER_MINUTE")
    token_rate_limit_per_minute: int = env_field(60, "TOKEN_RATE_LIMIT_PER_MINUTE")

    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed to call the API",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("flood_max_attempts", "flood_window_seconds", "password_max_age_days")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("root_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("signing_secret", mode="before")
    @classmethod
    def _ensure_signing_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so signed URLs and encrypted TOTP
        # secrets remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/hidauth"))
        secret_path = fs_root / ".signing_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "signing_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "signing_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        try:
            import tempfile
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".signing_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            try:
                if "tmp_path" in locals():
                    os.unlink(tmp_path)
            except OSError:
                pass
            logger.error(
                "signing_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist signing secret; set SIGNING_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
