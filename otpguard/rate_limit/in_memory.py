"""
In-Memory Window Store
======================
Fixed-window rate limiter keyed by identifier and purpose.

Windows reset wholesale rather than leaking continuously. A burst of up
to twice the limit is possible across a window boundary; in exchange the
counter is trivial to audit and to test.
"""

import threading
import time
from typing import Callable, Dict, Optional

from .models import RateLimitInfo, RateWindow, retry_after_ms


class InMemoryWindowStore:
    """
    Fixed-window counters held in process memory.
    
    Use RedisWindowStore when several processes share the limits.
    """
    
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = threading.Lock()
    
    def check(self, key: str, limit: int, window_seconds: float) -> RateLimitInfo:
        """
        Count one request against `key` and decide.
        
        Args:
            key: Identifier plus purpose, e.g. "otp-request:+15551234567"
            limit: Requests allowed per window
            window_seconds: Window length
            
        Returns:
            RateLimitInfo with decision and quota
        """
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            
            if window is None or window.is_stale(now):
                window = RateWindow(
                    count=1,
                    window_start=now,
                    window_seconds=window_seconds,
                    limit=limit,
                )
                self._windows[key] = window
                return RateLimitInfo(
                    allowed=True,
                    remaining=limit - 1,
                    limit=limit,
                    reset_at=window.reset_at,
                )
            
            if window.count >= limit:
                return RateLimitInfo(
                    allowed=False,
                    remaining=0,
                    limit=limit,
                    reset_at=window.reset_at,
                    retry_after_ms=retry_after_ms(window.reset_at, now),
                )
            
            window.count += 1
            return RateLimitInfo(
                allowed=True,
                remaining=limit - window.count,
                limit=limit,
                reset_at=window.reset_at,
            )
    
    def reset(self, key: str) -> None:
        """Clear a key, e.g. after a successful verification."""
        with self._lock:
            self._windows.pop(key, None)
    
    def sweep(self, now: Optional[float] = None) -> int:
        """
        Remove windows that have fully elapsed.
        
        Returns:
            Number of windows removed
        """
        now = self._clock() if now is None else now
        with self._lock:
            keys = list(self._windows)
        
        removed = 0
        for key in keys:
            with self._lock:
                window = self._windows.get(key)
                if window is not None and window.is_stale(now):
                    del self._windows[key]
                    removed += 1
        return removed
    
    def __len__(self) -> int:
        return len(self._windows)
