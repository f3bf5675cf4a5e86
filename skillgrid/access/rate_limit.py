"""
Fixed-window rate limiting keyed by caller identity.

The only shared mutable state in the request pipeline. Counters are keyed
by (caller key, window index); increment-and-check happens under one lock
and never waits for capacity. Callers over quota get a RateLimited error
carrying the seconds left until the next window.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from skillgrid.contracts.errors import RateLimited
from skillgrid.contracts.schema import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    """Counter state after an admitted request."""

    limit: int
    remaining: int
    reset_after: int


class FixedWindowRateLimiter:
    """In-memory fixed-window counter."""

    def __init__(
        self,
        limit: int,
        window_seconds: int = 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._counters: dict[tuple[str, int], int] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now: datetime | None = None) -> RateLimitStatus:
        """
        Count one request for ``key``.

        Raises:
            RateLimited: The key already used its quota in the current window.
        """
        timestamp = (now or self.clock()).timestamp()
        window = int(timestamp // self.window_seconds)
        reset_after = max(1, math.ceil((window + 1) * self.window_seconds - timestamp))

        with self._lock:
            self._evict_before(window)
            count = self._counters.get((key, window), 0)
            if count >= self.limit:
                blocked = True
            else:
                blocked = False
                count += 1
                self._counters[(key, window)] = count

        if blocked:
            logger.warning(
                "Rate limit exceeded: key=%s limit=%d retry_after=%ds",
                key, self.limit, reset_after,
            )
            raise RateLimited(
                f"Too many requests for '{key}': limit is {self.limit} "
                f"per {self.window_seconds}s",
                retry_after=reset_after,
            )

        return RateLimitStatus(
            limit=self.limit, remaining=self.limit - count, reset_after=reset_after
        )

    def _evict_before(self, window: int) -> None:
        stale = [k for k in self._counters if k[1] < window]
        for k in stale:
            del self._counters[k]
