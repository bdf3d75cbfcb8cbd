from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from hidauth.config import get_settings, reset_settings_cache
from hidauth.logging import get_logger
from hidauth.service.credentials import CredentialVerifier
from hidauth.service.flood import FloodGuard
from hidauth.service.login import LoginService
from hidauth.service.oauth import OAuthEngine
from hidauth.service.session import SessionBridge
from hidauth.service.signing import RequestSigner
from hidauth.service.tokens import TokenService, load_signing_keys
from hidauth.service.totp import TotpGate
from hidauth.storage.memory import MemoryStore
from hidauth.storage.models import utcnow
from hidauth.storage.postgres import PostgresStore
from hidauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    encryption_key=self.settings.signing_secret,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    encryption_key=self.settings.signing_secret,
                    timeout_seconds=self.settings.database_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.redis_socket_timeout,
                    )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and pending OAuth authorizations; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and pending "
                    "authorizations are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.keys = load_signing_keys(self.settings)
        self.flood = FloodGuard(self.store, self.settings)
        self.credentials = CredentialVerifier(self.store, self.flood, self.settings)
        self.totp = TotpGate(self.store, self.flood, self.settings)
        self.tokens = TokenService(self.store, self.keys, issuer=self.settings.root_url)
        self.sessions = SessionBridge(self.store, self.settings)
        self.oauth = OAuthEngine(self.store, self.tokens, self.settings, cache=self.cache)
        self.login = LoginService(
            self.store,
            self.credentials,
            self.totp,
            self.tokens,
            self.sessions,
            self.settings,
        )
        self.signer = RequestSigner(self.settings)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            issuer=self.settings.root_url,
            key_id=self.keys.kid,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path once the
    runtime exists, the locked check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    runtime.cache._sync_client.close()
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except Exception as exc:
                logger.debug("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit that keeps working when Redis is unavailable.

    Returns ``allowed`` or, with ``return_remaining``, a tuple of
    ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = utcnow()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
            runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = (
            int((cost - tokens) / refill_rate) if not allowed and refill_rate > 0 else 0
        )
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
