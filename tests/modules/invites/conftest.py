"""
Fixtures for invites tests.
"""

from unittest.mock import AsyncMock

import pytest

from app.core.email import Notifier
from app.core.rate_limit import (
    TIER_BULK,
    TIER_EMAIL,
    TIER_IP,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitTier,
)
from app.modules.invites.audit import InMemoryAuditTrail
from app.modules.invites.jobs import ExpiryReconciler
from app.modules.invites.repository import InMemoryInviteStore
from app.modules.invites.service import InviteService
from app.modules.invites.tokens import TokenCodec


@pytest.fixture
def codec():
    return TokenCodec.from_secret("test-invite-token-secret")


@pytest.fixture
def invite_store():
    return InMemoryInviteStore()


@pytest.fixture
def counter_store(clock):
    return InMemoryCounterStore(clock=clock.monotonic)


@pytest.fixture
def rate_limiter(counter_store):
    return RateLimiter(
        counter_store,
        {
            TIER_IP: RateLimitTier(TIER_IP, 10, 3600),
            TIER_EMAIL: RateLimitTier(TIER_EMAIL, 3, 86400),
            TIER_BULK: RateLimitTier(TIER_BULK, 2, 3600),
        },
    )


@pytest.fixture
def audit():
    return InMemoryAuditTrail()


@pytest.fixture
def notifier():
    """Notifier that reports every email as delivered."""
    mock = AsyncMock(spec=Notifier)
    mock.send_invite.return_value = True
    return mock


@pytest.fixture
def service(invite_store, codec, rate_limiter, audit, notifier, clock):
    return InviteService(
        store=invite_store,
        codec=codec,
        rate_limiter=rate_limiter,
        audit=audit,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def reconciler(invite_store, audit, clock):
    return ExpiryReconciler(invite_store, audit, batch_size=2, max_batches=5, clock=clock)
