"""
Fixed-window rate limiter for the metering gateway.

Each caller has one window record ``{count, windowStart}`` in the counter
store, written with a TTL slightly longer than the window so stale windows
clean themselves up. A record older than one window is ignored and a fresh
window starts at the current request.

The check is a plain read followed by a write; there is no atomic increment.
Concurrent requests from the same caller can read the same count and all be
admitted, so a caller may exceed the ceiling by up to the number of its
requests in flight at once. That overshoot is accepted in exchange for a
single round trip pair and no coordination.
"""

import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger

from ..store.counter_store import CounterStore, RATE_NAMESPACE


@dataclass(frozen=True)
class RateWindowRecord:
    """Request count for one caller in one window."""

    count: int
    window_start: float

    def to_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "windowStart": self.window_start}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RateWindowRecord"]:
        """Decode a stored window, or None if absent or malformed."""
        if not data:
            return None
        count = data.get("count")
        window_start = data.get("windowStart")
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            return None
        if not isinstance(window_start, (int, float)) or isinstance(window_start, bool):
            return None
        return cls(count=count, window_start=float(window_start))


@dataclass(frozen=True)
class RateDecision:
    """Outcome of a rate check."""

    allowed: bool
    count: int
    limit: int
    reset_in_seconds: int
    retry_after_seconds: Optional[int] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def headers(self) -> Dict[str, str]:
        """Rate limit metadata as standard response headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_in_seconds),
        }


class FixedWindowRateLimiter:
    """Caps requests per caller over a fixed window using the counter store."""

    def __init__(
        self,
        store: CounterStore,
        *,
        window_seconds: int = 60,
        ceiling: int = 100,
        ttl_slack_seconds: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0 or ceiling <= 0:
            raise ValueError("window_seconds and ceiling must be positive")
        self.store = store
        self.window_seconds = window_seconds
        self.ceiling = ceiling
        self.ttl_slack_seconds = ttl_slack_seconds
        self.clock = clock
        self.logger = get_logger("metering.rate_limiter")

    async def check_and_increment(self, identity: str) -> RateDecision:
        """Count one request for ``identity`` if the current window has room."""
        now = self.clock()
        window = await self._current_window(identity, now)
        elapsed = now - window.window_start

        if window.count >= self.ceiling:
            retry_after = min(self.window_seconds, max(1, math.ceil(self.window_seconds - elapsed)))
            self.logger.warning(
                "Rate limit exceeded",
                count=window.count,
                limit=self.ceiling,
                retry_after_seconds=retry_after,
            )
            return RateDecision(
                allowed=False,
                count=window.count,
                limit=self.ceiling,
                reset_in_seconds=retry_after,
                retry_after_seconds=retry_after,
            )

        updated = RateWindowRecord(count=window.count + 1, window_start=window.window_start)
        await self.store.put(
            RATE_NAMESPACE,
            identity,
            updated.to_dict(),
            ttl_seconds=self.window_seconds + self.ttl_slack_seconds,
        )
        return RateDecision(
            allowed=True,
            count=updated.count,
            limit=self.ceiling,
            reset_in_seconds=max(0, math.ceil(self.window_seconds - elapsed)),
        )

    async def status(self, identity: str) -> RateDecision:
        """Current window state without counting a request."""
        now = self.clock()
        window = await self._current_window(identity, now)
        reset_in = max(0, math.ceil(self.window_seconds - (now - window.window_start)))
        return RateDecision(
            allowed=window.count < self.ceiling,
            count=window.count,
            limit=self.ceiling,
            reset_in_seconds=reset_in,
        )

    async def _current_window(self, identity: str, now: float) -> RateWindowRecord:
        record = RateWindowRecord.from_dict(await self.store.get(RATE_NAMESPACE, identity))
        if record is None or now - record.window_start >= self.window_seconds:
            return RateWindowRecord(count=0, window_start=now)
        return record
