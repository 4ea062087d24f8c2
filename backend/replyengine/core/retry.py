"""
Retry with exponential backoff and jitter.

Attempts are numbered from 0. After a failed attempt n the executor sleeps
min(base_delay * 2**n + jitter, max_delay) where jitter is drawn uniformly
from [0, 0.3 * base_delay * 2**n], then tries again. A policy with
max_retries=N makes at most N + 1 attempts.
"""
import asyncio
import random
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, FrozenSet, Optional, TypeVar

from replyengine.core.errors import ErrorCode, RETRYABLE_CODES, classify_error
from replyengine.core.logging import get_logger
from replyengine.core.metrics import record_llm_retry

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_FACTOR = 0.3


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy. Delays are in seconds."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    retryable_codes: FrozenSet[ErrorCode] = field(default_factory=lambda: RETRYABLE_CODES)

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def with_max_retries(self, max_retries: int) -> "RetryPolicy":
        return replace(self, max_retries=max_retries)


DEFAULT_RETRY_POLICY = RetryPolicy()
# Image analysis gets fewer retries.
IMAGE_RETRY_POLICY = RetryPolicy(max_retries=2)


def exponential_delay(policy: RetryPolicy, attempt: int) -> float:
    """Pre-jitter delay for an attempt, capped at max_delay."""
    return min(policy.base_delay * (2 ** attempt), policy.max_delay)


def backoff_delay(policy: RetryPolicy, attempt: int, rng: random.Random) -> float:
    """Delay to sleep after a failed attempt, jitter included, never above max_delay."""
    base = policy.base_delay * (2 ** attempt)
    jitter = rng.uniform(0, JITTER_FACTOR * base)
    return min(base + jitter, policy.max_delay)


class RetryExecutor:
    """Runs an async operation under a RetryPolicy, classifying every failure."""

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.policy = policy
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
    ) -> T:
        """
        Execute operation, retrying retryable failures.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            policy: Overrides the executor's default policy for this call

        Returns:
            The operation's result

        Raises:
            APIError: The classified error of the last attempt
        """
        policy = policy or self.policy
        attempt = 0

        while True:
            try:
                return await operation()
            except Exception as exc:
                error = classify_error(exc)

                if error.code not in policy.retryable_codes or attempt >= policy.max_retries:
                    if attempt > 0:
                        logger.warning(
                            "llm_retries_exhausted",
                            attempts=attempt + 1,
                            code=error.code.value,
                        )
                    if error is exc:
                        raise
                    raise error from exc

                delay = backoff_delay(policy, attempt, self._rng)
                record_llm_retry(error.code.value)
                logger.warning(
                    "llm_retry_scheduled",
                    attempt=attempt + 1,
                    max_attempts=policy.max_retries + 1,
                    code=error.code.value,
                    http_status=error.http_status,
                    delay_seconds=round(delay, 3),
                )
                await self._sleep(delay)
                attempt += 1
