"""
Per-sender fixed window rate limiting.

Default: 10 inbound messages per phone per 60 seconds.
"""

import logging
from dataclasses import dataclass

from seatline.kvstore import KeyValueStore
from seatline.phone import mask_phone

logger = logging.getLogger(__name__)

KEY_PREFIX = "rate_limit:"
DEFAULT_LIMIT = 10
DEFAULT_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float
    count: int
    limit: int

    @property
    def first_rejection(self) -> bool:
        """True only for the first denied request of the current window."""
        return not self.allowed and self.count == self.limit + 1


class RateLimiter:
    """Fixed window counter keyed by canonical phone number."""

    def __init__(self, store: KeyValueStore, limit: int = DEFAULT_LIMIT,
                 window_seconds: int = DEFAULT_WINDOW_SECONDS):
        self._store = store
        self.limit = limit
        self.window_seconds = window_seconds

    def hit(self, phone_e164: str) -> RateLimitDecision:
        """
        Count one request for phone_e164 and decide whether it is allowed.

        Args:
            phone_e164: Canonical sender phone

        Returns:
            RateLimitDecision with remaining quota and window reset time
        """
        count, reset_at = self._store.incr(f"{KEY_PREFIX}{phone_e164}", self.window_seconds)
        allowed = count <= self.limit
        decision = RateLimitDecision(
            allowed=allowed,
            remaining=max(self.limit - count, 0),
            reset_at=reset_at,
            count=count,
            limit=self.limit,
        )
        if not allowed:
            logger.warning(
                f"Rate limit exceeded for {mask_phone(phone_e164)}",
                extra={"count": count, "limit": self.limit},
            )
        return decision
