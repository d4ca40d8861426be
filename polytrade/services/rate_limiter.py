"""
Rate Limiter Service for outbound WhatsApp requests (sliding window).

Meta allows 100 requests/minute; the default window permits 80 to keep a margin.
State is in-process only, so every running instance has its own window.
"""
import asyncio
import random
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from polytrade.routes.metrics import track_rate_limit_wait

logger = structlog.get_logger()

WARNING_THRESHOLD = 5
MAX_JITTER_SECONDS = 5.0


@dataclass
class RateLimitStatus:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_time: datetime
    wait_time: float = 0.0  # seconds until the oldest request leaves the window

    @property
    def current(self) -> str:
        if not self.allowed:
            return "limited"
        if self.remaining <= WARNING_THRESHOLD:
            return "warning"
        return "ok"


class RateLimiter:
    """Sliding-window limiter shared by all sends in this process."""

    def __init__(
        self,
        max_requests: int = 80,
        window: float = 60.0,
        jitter: bool = True,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        self.max_requests = max_requests
        self.window = window  # seconds
        self.jitter = jitter
        self._clock = clock
        self._sleep = sleep
        self._requests: deque[float] = deque()

    def _clean_old_requests(self, now: float) -> None:
        cutoff = now - self.window
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()

    def check(self) -> RateLimitStatus:
        """
        Check whether a request is currently permitted.

        Returns:
            RateLimitStatus with remaining permits and, when limited, the wait
            time until the oldest tracked request exits the window.
        """
        now = self._clock()
        self._clean_old_requests(now)

        remaining = self.max_requests - len(self._requests)
        reset_time = datetime.now(timezone.utc) + timedelta(seconds=self.window)

        if remaining <= 0:
            if self._requests:
                wait_time = self.window - (now - self._requests[0])
            else:
                wait_time = self.window
            return RateLimitStatus(
                allowed=False,
                remaining=0,
                reset_time=reset_time,
                wait_time=max(0.0, wait_time),
            )

        return RateLimitStatus(allowed=True, remaining=remaining, reset_time=reset_time)

    def record(self) -> None:
        """Register a request at the current time."""
        self._requests.append(self._clock())

    async def wait_if_needed(self) -> float:
        """
        Wait until a permit is available, then register the request.

        Returns:
            Total seconds spent waiting (0 when a permit was free).
        """
        waited = 0.0

        while True:
            # check() and record() run without an await in between
            status = self.check()
            if status.allowed:
                if status.current == "warning":
                    logger.debug(
                        "rate_limit_warning",
                        remaining=status.remaining,
                        requests_in_window=len(self._requests),
                    )
                self.record()
                return waited

            wait_time = self._with_jitter(status.wait_time)
            logger.warning(
                "rate_limit_wait",
                wait_seconds=round(wait_time, 3),
                requests_in_window=len(self._requests),
                max_requests=self.max_requests,
            )
            track_rate_limit_wait()

            await self._sleep(wait_time)
            waited += wait_time

    def _with_jitter(self, wait_time: float) -> float:
        # Spread out waiters that were limited at the same moment
        if self.jitter and wait_time > 1.0:
            wait_time += random.uniform(0, min(wait_time * 0.1, MAX_JITTER_SECONDS))
        return wait_time

    def get_metrics(self) -> dict:
        """Get current window utilisation for monitoring."""
        now = self._clock()
        self._clean_old_requests(now)
        count = len(self._requests)

        def _as_datetime(timestamp: float) -> str:
            age = now - timestamp
            return (datetime.now(timezone.utc) - timedelta(seconds=age)).isoformat()

        return {
            "requests_in_window": count,
            "max_requests": self.max_requests,
            "window_seconds": self.window,
            "utilization": round(count / self.max_requests * 100, 2) if self.max_requests else 0.0,
            "oldest_request": _as_datetime(self._requests[0]) if self._requests else None,
            "newest_request": _as_datetime(self._requests[-1]) if self._requests else None,
        }

    def reset(self) -> None:
        """Clear the window."""
        self._requests.clear()
        logger.debug("rate_limiter_reset")
