"""
Rate Limit Models
=================
Data models for fixed-window rate limiting.
"""

import math
from typing import Optional, Protocol
from dataclasses import dataclass


@dataclass
class RateWindow:
    """Counter for one key inside its current fixed window."""
    count: int
    window_start: float
    window_seconds: float
    limit: int
    
    @property
    def reset_at(self) -> float:
        return self.window_start + self.window_seconds
    
    def is_stale(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds


@dataclass
class RateLimitInfo:
    """Rate limit check result with quota information."""
    allowed: bool
    remaining: int
    limit: int
    reset_at: float  # Unix timestamp
    retry_after_ms: Optional[int] = None  # Only set when refused


def retry_after_ms(reset_at: float, now: float) -> int:
    """Milliseconds until `reset_at`, never below 1."""
    return max(1, math.ceil((reset_at - now) * 1000))


class WindowStore(Protocol):
    """Storage contract shared by the in-memory and Redis limiters."""
    
    def check(self, key: str, limit: int, window_seconds: float) -> RateLimitInfo:
        ...
    
    def reset(self, key: str) -> None:
        ...
    
    def sweep(self, now: Optional[float] = None) -> int:
        ...
