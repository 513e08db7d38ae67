"""
Rate Limiting Module

Multi-tier fixed window rate limiting for invite operations.

Each tier is an independently configured ``(limit, window_seconds)`` pair.
Counters live in a TTL-capable counter store (Redis in production, memory in
tests and single-process deployments):

- The first increment in a window sets the window's expiry
- A post-increment count above the limit is a breach
- A breached attempt still counts against the quota (bounds retry storms)

If the counter store is unreachable the limiter fails open by default: the
outage is logged and the request is allowed. Set ``fail_open=False`` for
deployments that prefer to reject requests instead.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from app.core.config import Settings
from app.core.exceptions import DependencyError, RateLimitExceededError

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit"


class CounterStore(ABC):
    """TTL-capable key/counter backend."""

    @abstractmethod
    async def increment(self, key: str, window_seconds: int) -> int:
        """Atomically increment ``key``, setting its TTL on the first increment."""

    @abstractmethod
    async def get(self, key: str) -> int:
        """Current count for ``key`` (0 when absent or expired)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Drop the counter for ``key``."""

    @abstractmethod
    async def ttl(self, key: str) -> int | None:
        """Seconds until ``key`` expires, or None when absent."""


class InMemoryCounterStore(CounterStore):
    """
    Counter store held in process memory.

    Note: counts are not shared across server instances. Every method runs
    without awaiting, so each call is atomic on the event loop.

    Expired counters are evicted when read, and every ``sweep_every``
    increments a full sweep drops those whose keys were never touched again.
    """

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, sweep_every: int = 1000
    ):
        self._clock = clock
        self.sweep_every = sweep_every
        self._increments_since_sweep = 0
        # Format: {key: (count, window_expires_at)}
        self._counters: dict[str, tuple[int, float]] = {}

    def entry_count(self) -> int:
        """Stored counters, including expired ones not yet evicted."""
        return len(self._counters)

    def _sweep(self) -> None:
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]
        self._increments_since_sweep = 0

    def _live_entry(self, key: str) -> tuple[int, float] | None:
        entry = self._counters.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            # Window elapsed: evict
            del self._counters[key]
            return None
        return entry

    async def increment(self, key: str, window_seconds: int) -> int:
        self._increments_since_sweep += 1
        if self._increments_since_sweep >= self.sweep_every:
            self._sweep()

        entry = self._live_entry(key)
        if entry is None:
            self._counters[key] = (1, self._clock() + window_seconds)
            return 1
        count, expires_at = entry
        self._counters[key] = (count + 1, expires_at)
        return count + 1

    async def get(self, key: str) -> int:
        entry = self._live_entry(key)
        return entry[0] if entry else 0

    async def delete(self, key: str) -> None:
        self._counters.pop(key, None)

    async def ttl(self, key: str) -> int | None:
        entry = self._live_entry(key)
        if entry is None:
            return None
        return max(0, int(entry[1] - self._clock()))


@dataclass(frozen=True)
class RateLimitTier:
    """One quota dimension: at most ``limit`` requests per ``window_seconds``."""

    name: str
    limit: int
    window_seconds: int


TIER_IP = "ip"
TIER_EMAIL = "email"
TIER_BULK = "bulk"


def tiers_from_settings(settings: Settings) -> dict[str, RateLimitTier]:
    """Build the invite tiers (per inviter IP, per recipient email, per bulk actor)."""
    return {
        TIER_IP: RateLimitTier(
            TIER_IP, settings.rate_limit_ip_limit, settings.rate_limit_ip_window_seconds
        ),
        TIER_EMAIL: RateLimitTier(
            TIER_EMAIL, settings.rate_limit_email_limit, settings.rate_limit_email_window_seconds
        ),
        TIER_BULK: RateLimitTier(
            TIER_BULK, settings.rate_limit_bulk_limit, settings.rate_limit_bulk_window_seconds
        ),
    }


class RateLimiter:
    """
    Fixed window rate limiter over a counter store.

    Args:
        store: Counter backend
        tiers: Tier configuration keyed by tier name
        fail_open: Allow requests when the counter store is unreachable
    """

    def __init__(
        self,
        store: CounterStore,
        tiers: dict[str, RateLimitTier],
        fail_open: bool = True,
    ):
        self.store = store
        self.tiers = tiers
        self.fail_open = fail_open

    def _tier(self, tier: str) -> RateLimitTier:
        try:
            return self.tiers[tier]
        except KeyError:
            raise ValueError(f"Unknown rate limit tier: {tier}") from None

    @staticmethod
    def _key(tier: RateLimitTier, identifier: str) -> str:
        return f"{KEY_PREFIX}:{tier.name}:{identifier}"

    def _handle_store_failure(self, key: str, error: DependencyError) -> None:
        if self.fail_open:
            logger.error(f"Rate limit store unavailable for {key}, allowing request: {error}")
            return
        logger.error(f"Rate limit store unavailable for {key}, rejecting request")
        raise error

    async def check_limit(self, identifier: str, tier: str) -> int:
        """
        Count one request against ``tier`` for ``identifier``.

        Args:
            identifier: IP address, email, or actor id
            tier: Tier name (``ip``, ``email``, ``bulk``)

        Returns:
            The post-increment count (0 when the store was unreachable and
            the limiter failed open)

        Raises:
            RateLimitExceededError: If the tier's quota is exhausted
            DependencyError: If the store is unreachable and fail_open is False
        """
        config = self._tier(tier)
        key = self._key(config, identifier)

        try:
            count = await self.store.increment(key, config.window_seconds)
        except DependencyError as e:
            self._handle_store_failure(key, e)
            return 0

        if count <= config.limit:
            return count

        try:
            ttl = await self.store.ttl(key)
        except DependencyError:
            ttl = None
        retry_after = ttl if ttl and ttl > 0 else config.window_seconds

        logger.warning(
            f"Rate limit exceeded for tier {config.name}: {count}/{config.limit} "
            f"in {config.window_seconds}s"
        )
        raise RateLimitExceededError(
            tier=config.name, limit=config.limit, retry_after_seconds=retry_after
        )

    async def get_usage(self, identifier: str, tier: str) -> int:
        """Current count for ``identifier`` in ``tier`` (0 if unknown or unreachable)."""
        config = self._tier(tier)
        try:
            return await self.store.get(self._key(config, identifier))
        except DependencyError as e:
            logger.error(f"Rate limit store unavailable reading usage: {e}")
            return 0

    async def reset_limit(self, identifier: str, tier: str) -> None:
        """Clear the counter for ``identifier`` in ``tier``."""
        config = self._tier(tier)
        try:
            await self.store.delete(self._key(config, identifier))
        except DependencyError as e:
            logger.error(f"Error resetting rate limit: {e}")


__all__ = [
    "CounterStore",
    "InMemoryCounterStore",
    "RateLimitTier",
    "RateLimiter",
    "tiers_from_settings",
    "TIER_IP",
    "TIER_EMAIL",
    "TIER_BULK",
]
