"""
Core module - Configuration, database, rate limiting, security, and utilities.
"""

from app.core.config import get_settings, settings
from app.core.database import Base, close_db, init_db
from app.core.exceptions import DependencyError, ServiceError
from app.core.rate_limit import InMemoryCounterStore, RateLimiter, tiers_from_settings
from app.core.redis import RedisCounterStore
from app.core.security import create_access_token, decode_token

__all__ = [
    # Config
    "settings",
    "get_settings",
    # Database
    "Base",
    "init_db",
    "close_db",
    # Errors
    "ServiceError",
    "DependencyError",
    # Rate limiting
    "RateLimiter",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "tiers_from_settings",
    # Security
    "create_access_token",
    "decode_token",
]
