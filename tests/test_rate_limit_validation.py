"""Tests for check_rate_limit in runtime.py.

Without Redis the limiter falls back to an in-process token bucket. Invalid
window_seconds is logged and treated as 60 seconds.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from genesis_auth.service.runtime import Runtime, check_rate_limit


@pytest.fixture
def local_runtime():
    runtime = MagicMock(spec=Runtime)
    runtime.cache = None
    runtime._local_rate_limits = {}
    runtime._local_rate_limit_lock = asyncio.Lock()
    return runtime


@pytest.fixture
def redis_runtime():
    runtime = MagicMock(spec=Runtime)
    runtime.cache = AsyncMock()
    runtime.cache.check_rate_limit = AsyncMock(return_value=True)
    return runtime


def _run(coro):
    return asyncio.run(coro)


class TestCheckRateLimit:
    def test_zero_limit_always_passes(self, local_runtime):
        assert _run(check_rate_limit(local_runtime, "login:ip", 0, 60)) is True
        assert _run(check_rate_limit(local_runtime, "login:ip", -1, 60)) is True
        assert local_runtime._local_rate_limits == {}

    def test_invalid_window_logs_warning(self, local_runtime):
        with patch("genesis_auth.service.runtime.logger") as mock_logger:
            assert _run(check_rate_limit(local_runtime, "login:ip", 10, 0)) is True

        mock_logger.warning.assert_called_once()
        args, kwargs = mock_logger.warning.call_args
        assert args[0] == "rate_limit_invalid_window"
        assert kwargs["window_seconds"] == 0

    def test_valid_window_no_warning(self, local_runtime):
        with patch("genesis_auth.service.runtime.logger") as mock_logger:
            _run(check_rate_limit(local_runtime, "login:ip", 10, 60))
        mock_logger.warning.assert_not_called()

    def test_bucket_exhausts_after_limit(self, local_runtime):
        for i in range(5):
            assert _run(check_rate_limit(local_runtime, "login:ip", 5, 60)) is True, f"call {i + 1}"
        assert _run(check_rate_limit(local_runtime, "login:ip", 5, 60)) is False

    def test_remaining_and_reset_reported(self, local_runtime):
        allowed, remaining, reset = _run(
            check_rate_limit(local_runtime, "forgot:ip", 3, 60, return_remaining=True)
        )
        assert (allowed, remaining, reset) == (True, 2, 0)

        for _ in range(2):
            _run(check_rate_limit(local_runtime, "forgot:ip", 3, 60))
        allowed, remaining, reset = _run(
            check_rate_limit(local_runtime, "forgot:ip", 3, 60, return_remaining=True)
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 21

    def test_different_keys_independent(self, local_runtime):
        for _ in range(3):
            _run(check_rate_limit(local_runtime, "key1", 3, 60))

        assert _run(check_rate_limit(local_runtime, "key2", 3, 60)) is True
        assert _run(check_rate_limit(local_runtime, "key1", 3, 60)) is False

    def test_bucket_refills_over_time(self, local_runtime):
        for _ in range(2):
            _run(check_rate_limit(local_runtime, "refill", 2, 60))
        assert _run(check_rate_limit(local_runtime, "refill", 2, 60)) is False

        tokens, last_ts = local_runtime._local_rate_limits["refill"]
        local_runtime._local_rate_limits["refill"] = (tokens, last_ts - timedelta(seconds=61))

        assert _run(check_rate_limit(local_runtime, "refill", 2, 60)) is True

    def test_uses_redis_when_available(self, redis_runtime):
        assert _run(check_rate_limit(redis_runtime, "login:ip", 10, 60)) is True
        redis_runtime.cache.check_rate_limit.assert_awaited_once_with(
            "login:ip", 10, 60, return_remaining=False, cost=1
        )
