import asyncio
import logging
import time
from typing import Dict
from fastapi import HTTPException, status

from config.env import SHIPROCKET_MAX_REQUESTS_PER_MINUTE

logger = logging.getLogger(__name__)

# In-memory store (process-level)
_RATE_LIMIT_STORE: Dict[str, list] = {}

def rate_limit(
    key: str,
    max_requests: int,
    window_seconds: int,
):
    """
    Simple sliding window rate limiter for inbound routes.
    key = user_id / ip / route
    """

    now = time.time()
    window_start = now - window_seconds

    timestamps = _RATE_LIMIT_STORE.get(key, [])

    # keep only valid timestamps
    timestamps = [t for t in timestamps if t > window_start]

    if len(timestamps) >= max_requests:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please slow down.",
        )

    timestamps.append(now)
    _RATE_LIMIT_STORE[key] = timestamps


class CarrierRateLimiter:
    """
    Fixed-window budget for outbound carrier API calls.

    Unlike rate_limit() above, callers are never rejected: once the window
    budget is spent, acquire() sleeps until the window resets.
    """

    def __init__(
        self,
        max_requests: int = SHIPROCKET_MAX_REQUESTS_PER_MINUTE,
        window_seconds: float = 60,
        *,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._count = 0
        self._reset_at = None

    async def acquire(self) -> float:
        """
        Take one slot from the current window. Returns seconds waited.
        """
        async with self._lock:
            now = self._clock()
            waited = 0.0

            if self._reset_at is None or now >= self._reset_at:
                self._count = 0
                self._reset_at = now + self.window_seconds

            if self._count >= self.max_requests:
                waited = self._reset_at - now
                logger.info("CARRIER_RATE_LIMIT_WAIT seconds=%.2f", waited)
                await self._sleep(waited)

                self._count = 0
                self._reset_at = now + waited + self.window_seconds

            self._count += 1
            return waited

    def remaining(self) -> int:
        if self._reset_at is None or self._clock() >= self._reset_at:
            return self.max_requests
        return max(0, self.max_requests - self._count)

    def reset(self):
        self._count = 0
        self._reset_at = None


# Shared by the sync worker, the webhook and manual tracking
carrier_rate_limiter = CarrierRateLimiter()
