"""
Rate Limiting
=============
Fixed-window rate limiters with in-memory and Redis backends.
"""

from .models import RateLimitInfo, RateWindow, WindowStore
from .in_memory import InMemoryWindowStore
from .redis_limiter import RedisWindowStore, FIXED_WINDOW_SCRIPT

__all__ = [
    # Models
    "RateLimitInfo",
    "RateWindow",
    "WindowStore",
    # Stores
    "InMemoryWindowStore",
    "RedisWindowStore",
    # Scripts
    "FIXED_WINDOW_SCRIPT",
]
