"""Per-client request budgets for the auth endpoints."""

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

# Idle clients are dropped at most this often
PRUNE_INTERVAL_SECONDS = 60


class RateLimitType(str, Enum):
    """Budget tiers. Issuing sends mail, so it gets the smallest budget."""

    ISSUE = "issue"
    VERIFY = "verify"
    API = "api"


@dataclass(frozen=True)
class Budget:
    requests: int
    window_seconds: int


BUDGETS: dict[RateLimitType, Budget] = {
    RateLimitType.ISSUE: Budget(requests=5, window_seconds=60),
    RateLimitType.VERIFY: Budget(requests=30, window_seconds=60),
    RateLimitType.API: Budget(requests=60, window_seconds=60),
}


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    retry_after: int = 0


class InMemoryRateLimiter:
    """Sliding window of request times per (tier, client).

    Clients with nothing left in their window are forgotten, so memory is
    bounded by the clients seen in the last window. Counts are per process.
    """

    def __init__(
        self,
        budgets: Mapping[RateLimitType, Budget] = BUDGETS,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.budgets = budgets
        self._timer = timer
        self._hits: dict[tuple[RateLimitType, str], deque[float]] = {}
        self._lock = asyncio.Lock()
        self._next_prune = 0.0

    def __len__(self) -> int:
        return len(self._hits)

    async def check(self, client: str, limit_type: RateLimitType) -> RateLimitResult:
        """Record a request from `client` if its budget allows it."""
        budget = self.budgets[limit_type]
        now = self._timer()

        async with self._lock:
            self._prune(now)
            hits = self._hits.setdefault((limit_type, client), deque())
            _drop_before(hits, now - budget.window_seconds)

            if len(hits) >= budget.requests:
                retry_after = math.ceil(hits[0] + budget.window_seconds - now)
                return RateLimitResult(
                    success=False,
                    limit=budget.requests,
                    remaining=0,
                    retry_after=max(1, retry_after),
                )

            hits.append(now)
            return RateLimitResult(
                success=True,
                limit=budget.requests,
                remaining=budget.requests - len(hits),
            )

    def _prune(self, now: float) -> None:
        if now < self._next_prune:
            return
        self._next_prune = now + PRUNE_INTERVAL_SECONDS

        for key, hits in list(self._hits.items()):
            _drop_before(hits, now - self.budgets[key[0]].window_seconds)
            if not hits:
                del self._hits[key]

    def reset(self) -> None:
        self._hits.clear()
        self._next_prune = 0.0


def _drop_before(hits: deque[float], cutoff: float) -> None:
    while hits and hits[0] <= cutoff:
        hits.popleft()


_rate_limiter = InMemoryRateLimiter()


def get_rate_limiter() -> InMemoryRateLimiter:
    return _rate_limiter


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
    }
    if not result.success:
        headers["Retry-After"] = str(result.retry_after)
    return headers
