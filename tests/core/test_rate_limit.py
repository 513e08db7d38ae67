"""
Unit tests for the rate limiting module.

These tests cover:
- Fixed window counting and window reset
- Independent tiers and identifiers
- Retry-after reporting
- Fail-open and fail-closed behavior when the store is unreachable
"""

from unittest.mock import AsyncMock

import pytest

from app.core.config import Settings
from app.core.exceptions import DependencyError, RateLimitExceededError
from app.core.rate_limit import (
    TIER_BULK,
    TIER_EMAIL,
    TIER_IP,
    CounterStore,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitTier,
    tiers_from_settings,
)

TIERS = {
    TIER_IP: RateLimitTier(TIER_IP, 2, 60),
    TIER_EMAIL: RateLimitTier(TIER_EMAIL, 3, 86400),
}


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock=clock.monotonic)


@pytest.fixture
def limiter(store):
    return RateLimiter(store, TIERS)


def _unreachable_store() -> CounterStore:
    store = AsyncMock(spec=CounterStore)
    store.increment.side_effect = DependencyError("redis")
    store.get.side_effect = DependencyError("redis")
    store.delete.side_effect = DependencyError("redis")
    return store


class TestInMemoryCounterStore:
    @pytest.mark.asyncio
    async def test_increment_counts_within_window(self, store):
        assert await store.increment("k", 60) == 1
        assert await store.increment("k", 60) == 2
        assert await store.get("k") == 2

    @pytest.mark.asyncio
    async def test_window_is_not_extended_by_later_increments(self, store, clock):
        await store.increment("k", 60)
        clock.advance(seconds=50)
        await store.increment("k", 60)

        assert await store.ttl("k") == 10
        clock.advance(seconds=10)
        assert await store.get("k") == 0
        assert await store.ttl("k") is None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.increment("k", 60)
        await store.delete("k")
        await store.delete("never-set")
        assert await store.get("k") == 0

    @pytest.mark.asyncio
    async def test_periodic_sweep_drops_untouched_expired_counters(self, clock):
        store = InMemoryCounterStore(clock=clock.monotonic, sweep_every=3)
        await store.increment("once@x.com", 60)
        await store.increment("10.0.0.9", 60)
        clock.advance(seconds=61)

        await store.increment("fresh", 60)

        assert store.entry_count() == 1
        assert await store.get("fresh") == 1


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter):
        assert await limiter.check_limit("10.0.0.1", TIER_IP) == 1
        assert await limiter.check_limit("10.0.0.1", TIER_IP) == 2

    @pytest.mark.asyncio
    async def test_breach_raises_with_retry_after(self, limiter, clock):
        await limiter.check_limit("10.0.0.1", TIER_IP)
        clock.advance(seconds=15)
        await limiter.check_limit("10.0.0.1", TIER_IP)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check_limit("10.0.0.1", TIER_IP)

        error = exc_info.value
        assert error.tier == TIER_IP
        assert error.limit == 2
        assert error.retry_after_seconds == 45
        assert error.status_code == 429
        assert error.to_dict()["retry_after_seconds"] == 45

    @pytest.mark.asyncio
    async def test_breached_attempts_still_count(self, limiter):
        for _ in range(2):
            await limiter.check_limit("10.0.0.1", TIER_IP)
        for _ in range(2):
            with pytest.raises(RateLimitExceededError):
                await limiter.check_limit("10.0.0.1", TIER_IP)

        assert await limiter.get_usage("10.0.0.1", TIER_IP) == 4

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, clock):
        for _ in range(2):
            await limiter.check_limit("10.0.0.1", TIER_IP)
        clock.advance(seconds=61)

        assert await limiter.check_limit("10.0.0.1", TIER_IP) == 1

    @pytest.mark.asyncio
    async def test_tiers_and_identifiers_are_independent(self, limiter):
        for _ in range(2):
            await limiter.check_limit("shared", TIER_IP)

        assert await limiter.check_limit("shared", TIER_EMAIL) == 1
        assert await limiter.check_limit("10.0.0.2", TIER_IP) == 1

    @pytest.mark.asyncio
    async def test_reset_limit(self, limiter):
        for _ in range(2):
            await limiter.check_limit("10.0.0.1", TIER_IP)
        await limiter.reset_limit("10.0.0.1", TIER_IP)

        assert await limiter.get_usage("10.0.0.1", TIER_IP) == 0

    @pytest.mark.asyncio
    async def test_unknown_tier(self, limiter):
        with pytest.raises(ValueError):
            await limiter.check_limit("10.0.0.1", TIER_BULK)


class TestStoreOutage:
    """Behavior when the counter store is unreachable."""

    @pytest.mark.asyncio
    async def test_fails_open_by_default(self):
        limiter = RateLimiter(_unreachable_store(), TIERS)

        for _ in range(5):
            assert await limiter.check_limit("10.0.0.1", TIER_IP) == 0

    @pytest.mark.asyncio
    async def test_fails_closed_when_configured(self):
        limiter = RateLimiter(_unreachable_store(), TIERS, fail_open=False)

        with pytest.raises(DependencyError) as exc_info:
            await limiter.check_limit("10.0.0.1", TIER_IP)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_usage_and_reset_tolerate_outage(self):
        limiter = RateLimiter(_unreachable_store(), TIERS)

        assert await limiter.get_usage("10.0.0.1", TIER_IP) == 0
        await limiter.reset_limit("10.0.0.1", TIER_IP)

    @pytest.mark.asyncio
    async def test_retry_after_falls_back_to_window(self):
        store = AsyncMock(spec=CounterStore)
        store.increment.return_value = 3
        store.ttl.side_effect = DependencyError("redis")
        limiter = RateLimiter(store, TIERS)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check_limit("10.0.0.1", TIER_IP)
        assert exc_info.value.retry_after_seconds == 60


class TestTiersFromSettings:
    def test_builds_all_three_tiers(self):
        settings = Settings(
            rate_limit_ip_limit=7,
            rate_limit_email_limit=4,
            rate_limit_bulk_limit=1,
        )

        tiers = tiers_from_settings(settings)

        assert set(tiers) == {TIER_IP, TIER_EMAIL, TIER_BULK}
        assert tiers[TIER_IP].limit == 7
        assert tiers[TIER_EMAIL].limit == 4
        assert tiers[TIER_BULK].limit == 1
