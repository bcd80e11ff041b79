"""
Per-client fixed-window request counter with lazy cleanup.

Each identity (normally the client IP) gets a ``RateLimitEntry``. A request
more than ``window`` seconds after the entry's ``window_start`` resets the
window; otherwise the count is incremented and requests beyond ``max_requests``
are rejected. Rejected requests still count, so a caller stays blocked until
the window resets.

Every ``cleanup_every``-th call sweeps entries whose window started more than
``stale_factor * window`` seconds ago.

State lives in this process only. The check-then-act on the table is not
locked: the asyncio event loop never runs two checks at once within one
process, but separate worker processes or instances each keep their own table
and counts are not shared between them.
"""
import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict

logger = logging.getLogger(__name__)

UNKNOWN_IDENTITY = "unknown"


@dataclass
class RateLimitEntry:
    count: int
    window_start: float


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    retry_after: float = 0.0


class RateLimiter:
    def __init__(
        self,
        window: float = 60.0,
        max_requests: int = 10,
        cleanup_every: int = 100,
        stale_factor: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        if window <= 0 or max_requests < 1:
            raise ValueError("window must be positive and max_requests at least 1")
        self.window = window
        self.max_requests = max_requests
        self.cleanup_every = max(1, cleanup_every)
        self.stale_factor = stale_factor
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._calls = 0

    @classmethod
    def from_settings(cls, settings) -> "RateLimiter":
        return cls(
            window=settings.rate_limit_window,
            max_requests=settings.rate_limit_max_requests,
            cleanup_every=settings.rate_limit_cleanup_every,
            stale_factor=settings.rate_limit_stale_factor,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identity: str) -> bool:
        return identity in self._entries

    def check(self, identity: str) -> RateLimitDecision:
        identity = identity or UNKNOWN_IDENTITY
        now = self._clock()
        decision = self._count(identity, now)

        self._calls += 1
        if self._calls % self.cleanup_every == 0:
            self.cleanup(now)
        return decision

    def _count(self, identity: str, now: float) -> RateLimitDecision:
        entry = self._entries.get(identity)
        if entry is None:
            self._entries[identity] = RateLimitEntry(count=1, window_start=now)
            return RateLimitDecision(allowed=True, count=1)

        if now - entry.window_start > self.window:
            entry.count = 1
            entry.window_start = now
            return RateLimitDecision(allowed=True, count=1)

        entry.count += 1
        if entry.count > self.max_requests:
            retry_after = max(0.0, self.window - (now - entry.window_start))
            return RateLimitDecision(allowed=False, count=entry.count, retry_after=retry_after)
        return RateLimitDecision(allowed=True, count=entry.count)

    def cleanup(self, now: float = None) -> int:
        """Drop entries whose window started more than stale_factor windows ago."""
        if now is None:
            now = self._clock()
        horizon = self.window * self.stale_factor
        stale = [ident for ident, entry in self._entries.items() if now - entry.window_start > horizon]
        for ident in stale:
            del self._entries[ident]
        if stale:
            logger.debug("Rate limiter cleanup removed %d stale entries", len(stale))
        return len(stale)
