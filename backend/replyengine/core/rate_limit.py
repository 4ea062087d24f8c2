"""
Token-bucket rate limiter for outbound LLM calls.

Defaults:
- Capacity: 10 tokens (bursts of 10 calls)
- Refill: 0.5 tokens/second (bucket refills fully in 20 seconds)

Capacity accrues continuously; each call consumes exactly one token and
only when at least one whole token is available, so the level always stays
within [0, max_tokens].
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from replyengine.core.logging import get_logger
from replyengine.core.metrics import record_rate_limit_wait

logger = get_logger(__name__)

DEFAULT_MAX_TOKENS = 10.0
DEFAULT_REFILL_RATE_PER_SECOND = 0.5


@dataclass
class RateLimitState:
    """Mutable bucket state. Only RateLimiter touches it."""
    tokens: float
    last_refill_at: float
    max_tokens: float
    refill_rate_per_second: float


class RateLimiter:
    """
    Token bucket with continuous refill.

    acquire() never blocks the event loop: when the bucket is empty the
    caller suspends on the injected sleep for exactly the time needed to
    accrue one token, then tries again.
    """

    def __init__(
        self,
        max_tokens: float = DEFAULT_MAX_TOKENS,
        refill_rate_per_second: float = DEFAULT_REFILL_RATE_PER_SECOND,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if refill_rate_per_second <= 0:
            raise ValueError("refill_rate_per_second must be > 0")

        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._state = RateLimitState(
            tokens=float(max_tokens),
            last_refill_at=self._clock(),
            max_tokens=float(max_tokens),
            refill_rate_per_second=float(refill_rate_per_second),
        )

    @property
    def max_tokens(self) -> float:
        return self._state.max_tokens

    @property
    def refill_rate_per_second(self) -> float:
        return self._state.refill_rate_per_second

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._state.last_refill_at)
        self._state.tokens = min(
            self._state.max_tokens,
            self._state.tokens + elapsed * self._state.refill_rate_per_second,
        )
        self._state.last_refill_at = now

    def _try_consume(self) -> bool:
        # No await between refill and decrement: atomic under interleaving.
        self._refill()
        if self._state.tokens >= 1.0:
            self._state.tokens -= 1.0
            return True
        return False

    def _wait_time(self) -> float:
        return (1.0 - self._state.tokens) / self._state.refill_rate_per_second

    def try_acquire(self) -> bool:
        """Consume a token if one is available right now, without waiting."""
        return self._try_consume()

    async def acquire(self) -> float:
        """
        Take one token, suspending until one is available.

        Returns:
            Total seconds spent waiting (0.0 when a token was immediately available)
        """
        waited = 0.0
        while not self._try_consume():
            wait_seconds = self._wait_time()
            logger.debug(
                "rate_limit_waiting",
                wait_seconds=round(wait_seconds, 3),
                tokens=round(self._state.tokens, 3),
            )
            await self._sleep(wait_seconds)
            waited += wait_seconds

        record_rate_limit_wait(waited)
        return waited

    def available_tokens(self) -> float:
        """Current token level after applying refill."""
        self._refill()
        return self._state.tokens

    def reset(self) -> None:
        """Refill the bucket to capacity."""
        self._state.tokens = self._state.max_tokens
        self._state.last_refill_at = self._clock()

    def get_metrics(self) -> dict:
        """Snapshot of the bucket for monitoring."""
        return {
            "tokens": self.available_tokens(),
            "max_tokens": self._state.max_tokens,
            "refill_rate_per_second": self._state.refill_rate_per_second,
        }
