"""Tests for the token-bucket rate limit helper in runtime.py.

Invalid window_seconds should be logged and default to 60 seconds; without
Redis the bucket is kept per process.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hidauth.storage.models import utcnow


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        from hidauth.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        from hidauth.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        from hidauth.service.runtime import check_rate_limit

        assert await check_rate_limit(mock_runtime, "test_key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "test_key", -1, 60) is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        """Invalid window_seconds logs warning and defaults to 60."""
        from hidauth.service.runtime import check_rate_limit

        with patch("hidauth.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        from hidauth.service.runtime import check_rate_limit

        with patch("hidauth.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_bucket_exhausts(self, mock_runtime):
        from hidauth.service.runtime import check_rate_limit

        for i in range(5):
            assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is True, f"call {i + 1}"
        assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is False

    async def test_remaining_and_reset(self, mock_runtime):
        from hidauth.service.runtime import check_rate_limit

        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "test_key", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)
        await check_rate_limit(mock_runtime, "test_key", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "test_key", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 30

    async def test_different_keys_independent(self, mock_runtime):
        from hidauth.service.runtime import check_rate_limit

        for _ in range(3):
            await check_rate_limit(mock_runtime, "key1", 3, 60)
        assert await check_rate_limit(mock_runtime, "key2", 3, 60) is True
        assert await check_rate_limit(mock_runtime, "key1", 3, 60) is False

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        from hidauth.service.runtime import check_rate_limit

        await check_rate_limit(mock_runtime_with_cache, "test_key", 10, 60)

        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )

    async def test_bucket_refills(self, mock_runtime):
        """Tokens refill once the window has elapsed."""
        from hidauth.service.runtime import check_rate_limit

        for _ in range(2):
            await check_rate_limit(mock_runtime, "test_key", 2, 1)
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is False

        tokens, _ = mock_runtime._local_rate_limits["test_key"]
        mock_runtime._local_rate_limits["test_key"] = (tokens, utcnow() - timedelta(seconds=2))
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is True


class TestRateLimitIntegration:
    """Rate limiting with the real memory-backed runtime."""

    async def test_concurrent_rate_limit_calls(self):
        from hidauth.service.runtime import check_rate_limit, get_runtime

        runtime = get_runtime()
        runtime._local_rate_limits = {}
        # Lock must belong to this test's event loop
        runtime._local_rate_limit_lock = asyncio.Lock()

        results = await asyncio.gather(
            *[check_rate_limit(runtime, "concurrent", 10, 60) for _ in range(15)]
        )

        assert results.count(True) == 10
        assert results.count(False) == 5
