"""Request pacing and retry policy for kalshi_gateway.

Every signed REST call, retries included, draws one token from a shared
aiolimiter bucket before it is signed, so the signature timestamp is taken
after any wait. The bucket starts full: ``burst`` calls go out back to back
(a batch of order legs, a cancel sweep) and the rest are paced at ``rate``
per second.

The retry policy only ever applies to idempotent reads. Mutating requests
are never retried automatically.
"""

import logging
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiolimiter import AsyncLimiter

from .errors import ConfigurationError

logger = logging.getLogger("kalshi_gateway.rate_limiter")


class GatewayRateLimiter:
    """Pacing for outbound REST calls, shared by every task using one client.

    Tracks how often callers had to wait for a token so that sustained
    throttling shows up in the dispatcher's health report.
    """

    def __init__(self, rate: float = 10.0, burst: int = 20):
        """
        Args:
            rate: Sustained requests per second.
            burst: Calls allowed back to back from a full bucket.

        Raises:
            ConfigurationError: rate is not positive or burst is below 1.
        """
        if rate <= 0:
            raise ConfigurationError(f"Request rate must be positive, got {rate}")
        if burst < 1:
            raise ConfigurationError(f"Request burst must be at least 1, got {burst}")

        self._limiter = AsyncLimiter(max_rate=burst, time_period=burst / rate)
        self._rate = rate
        self._burst = burst

        self._acquired = 0
        self._throttled = 0
        self._wait_seconds = 0.0
        logger.debug(f"Request pacing: {rate} req/s, burst {burst}")

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    @property
    def throttled(self) -> int:
        """Number of acquisitions that had to wait for a token."""
        return self._throttled

    async def acquire(self) -> None:
        """Take one token, waiting for the bucket to refill if it is empty."""
        if self._limiter.has_capacity():
            await self._limiter.acquire()
        else:
            started = time.monotonic()
            await self._limiter.acquire()
            waited = time.monotonic() - started
            self._throttled += 1
            self._wait_seconds += waited
            logger.debug(f"Request paced for {waited:.3f}s ({self._throttled} throttled so far)")
        self._acquired += 1

    def get_health(self) -> Dict[str, Any]:
        return {
            "rate": self._rate,
            "burst": self._burst,
            "acquired": self._acquired,
            "throttled": self._throttled,
            "wait_seconds": round(self._wait_seconds, 3),
        }


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy for idempotent GET requests.

    - 429: one retry after the server-indicated delay.
    - 5xx / transport error: up to ``max_transient_retries`` retries with
      exponential backoff starting at ``base_delay`` and capped at ``max_delay``.
    """

    max_transient_retries: int = 3
    rate_limit_retries: int = 1
    base_delay: float = 0.5
    max_delay: float = 8.0
    default_retry_after: float = 1.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def parse_retry_after(self, value: Optional[str]) -> float:
        """Interpret a Retry-After header (seconds or HTTP date)."""
        if not value:
            return self.default_retry_after

        value = value.strip()
        try:
            return max(0.0, float(value))
        except ValueError:
            pass

        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Unparseable Retry-After header: {value!r}")
            return self.default_retry_after

        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
