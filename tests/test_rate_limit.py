"""Tests for the attempt counter / lockout primitive.

Covers:
- Threshold promotion from counter to lock
- Lock precedence over an absent counter
- Success clearing both keys
- Window and lock expiry
- Fail-open behaviour when the store is unreachable
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from docprescrip.service.rate_limit import (
    FLOW_LOGIN,
    REDIS_ERROR,
    LockoutPolicy,
    RateLimiter,
    attempts_key,
    lockout_key,
    policies_from_settings,
)
from docprescrip.storage.memory_cache import MemoryCache

POLICY = LockoutPolicy(max_attempts=5, window_seconds=900, lockout_seconds=1800)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def limiter(cache):
    return RateLimiter(cache, {FLOW_LOGIN: POLICY})


class TestThreshold:
    async def test_fresh_pair_is_allowed_with_all_attempts(self, limiter):
        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert decision.allowed
        assert decision.remaining == 5
        assert not decision.locked

    async def test_failures_count_down_remaining(self, limiter):
        outcomes = [
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1") for _ in range(4)
        ]
        assert [o.remaining for o in outcomes] == [4, 3, 2, 1]
        assert not any(o.locked for o in outcomes)

    async def test_reaching_max_attempts_locks_the_pair(self, limiter, cache):
        for _ in range(4):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        outcome = await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")

        assert outcome.locked
        assert outcome.remaining == 0
        assert await cache.exists(lockout_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"))
        # counter is folded into the lock
        assert not await cache.exists(attempts_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"))

        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert not decision.allowed
        assert decision.locked
        assert 0 < decision.retry_after_seconds <= 1800

    async def test_counter_at_threshold_is_promoted_on_check(self, limiter, cache):
        await cache.set(attempts_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"), "5", 900)

        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")

        assert not decision.allowed
        assert decision.retry_after_seconds == 1800
        assert await cache.exists(lockout_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"))

    async def test_lock_wins_over_missing_counter(self, limiter, cache):
        await cache.set(lockout_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"), "1", 600)

        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")

        assert not decision.allowed
        assert decision.locked

    async def test_pairs_are_independent(self, limiter):
        for _ in range(5):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")

        other_origin = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.2")
        other_identity = await limiter.check_and_consume(FLOW_LOGIN, "c@d.co", "10.0.0.1")

        assert other_origin.allowed
        assert other_identity.allowed

    async def test_failure_while_locked_reports_locked(self, limiter):
        for _ in range(5):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        outcome = await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert outcome.locked
        assert outcome.remaining == 0


class TestResetAndExpiry:
    async def test_success_clears_counter_and_lock(self, limiter, cache):
        for _ in range(3):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        await cache.set(lockout_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"), "1", 600)

        await limiter.record_success(FLOW_LOGIN, "a@b.co", "10.0.0.1")

        assert not await cache.exists(attempts_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"))
        assert not await cache.exists(lockout_key(FLOW_LOGIN, "a@b.co", "10.0.0.1"))
        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert decision.remaining == 5

    async def test_counter_expires_after_window(self, limiter, clock):
        for _ in range(4):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        clock.advance(901)

        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert decision.allowed
        assert decision.remaining == 5

    async def test_lock_expiry_restores_access(self, limiter, clock):
        for _ in range(5):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        clock.advance(1801)

        decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert decision.allowed

    async def test_lockout_override_is_used(self, limiter, cache):
        for _ in range(4):
            await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        outcome = await limiter.record_failure(
            FLOW_LOGIN, "a@b.co", "10.0.0.1", lockout_seconds=60
        )
        assert outcome.retry_after_seconds == 60
        assert await cache.ttl(lockout_key(FLOW_LOGIN, "a@b.co", "10.0.0.1")) <= 60


class TestStoreFailure:
    def _broken_cache(self):
        cache = MagicMock()
        error = RedisConnectionError("redis://:hunter2@cache:6379 refused")
        for name in ("ttl", "get", "set", "delete", "record_failed_attempt"):
            setattr(cache, name, AsyncMock(side_effect=error))
        return cache

    async def test_check_fails_open_and_logs_redis_error(self):
        limiter = RateLimiter(self._broken_cache(), {FLOW_LOGIN: POLICY})
        with patch("docprescrip.service.rate_limit.logger") as mock_logger:
            decision = await limiter.check_and_consume(FLOW_LOGIN, "a@b.co", "10.0.0.1")

        assert decision.allowed
        assert decision.degraded
        mock_logger.error.assert_called_once()
        _, kwargs = mock_logger.error.call_args
        assert kwargs["event_type"] == REDIS_ERROR
        assert "hunter2" not in kwargs["error"]

    async def test_record_failure_fails_open(self):
        limiter = RateLimiter(self._broken_cache(), {FLOW_LOGIN: POLICY})
        with patch("docprescrip.service.rate_limit.logger"):
            outcome = await limiter.record_failure(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        assert not outcome.locked
        assert outcome.remaining is None

    async def test_record_success_swallows_store_errors(self):
        limiter = RateLimiter(self._broken_cache(), {FLOW_LOGIN: POLICY})
        with patch("docprescrip.service.rate_limit.logger") as mock_logger:
            await limiter.record_success(FLOW_LOGIN, "a@b.co", "10.0.0.1")
        mock_logger.error.assert_called_once()


class TestPolicies:
    def test_unknown_flow_raises(self, limiter):
        with pytest.raises(ValueError):
            limiter.policy("signup")

    def test_defaults_from_settings(self, settings):
        policies = policies_from_settings(settings)
        assert policies["login"] == LockoutPolicy(5, 900, 1800)
        assert policies["registration"] == LockoutPolicy(5, 1800, 3600)
        assert policies["forgot-password"] == LockoutPolicy(3, 1800, 3600)
        assert policies["pin"].max_attempts == 5
