"""
Token and cost accounting for completed LLM calls.

Records live in a ring buffer (oldest dropped beyond capacity). Totals are
folds over the buffer; nothing is persisted.
"""
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, List, Optional

from replyengine.core.logging import get_logger
from replyengine.core.metrics import record_llm_tokens_and_cost
from replyengine.services.ai.schema import (
    MODELS,
    RequestType,
    TokenUsage,
    UsageRecord,
    UsageSummary,
)

logger = get_logger(__name__)

DEFAULT_CAPACITY = 1000


def _local_now() -> datetime:
    """Aware local wall-clock time; "daily" follows the user's day."""
    return datetime.now().astimezone()


def _aware(value: datetime) -> datetime:
    # Naive datetimes are taken as local time.
    return value if value.tzinfo is not None else value.astimezone()


def estimate_cost(model: str, total_tokens: int) -> float:
    """Estimated USD cost; 0.0 for models missing from the catalogue."""
    info = MODELS.get(model)
    if info is None or total_tokens <= 0:
        return 0.0
    return (total_tokens / 1000.0) * info.cost_per_1k_tokens


class UsageTracker:
    """Append-only ring buffer of UsageRecord entries."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        now: Optional[Callable[[], datetime]] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._now = now or _local_now
        self._records: Deque[UsageRecord] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._records)

    def record(self, entry: UsageRecord) -> None:
        self._records.append(entry)
        record_llm_tokens_and_cost(
            model=entry.model,
            prompt_tokens=entry.prompt_tokens,
            completion_tokens=entry.completion_tokens,
            cost_usd=entry.estimated_cost,
        )

    def record_completion(
        self,
        request_type: RequestType,
        model: str,
        usage: TokenUsage,
    ) -> UsageRecord:
        """Build a record from a completion's token usage and append it."""
        total = usage.total_tokens or (usage.prompt_tokens + usage.completion_tokens)
        entry = UsageRecord(
            timestamp=self._now(),
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=total,
            estimated_cost=estimate_cost(model, total),
            request_type=request_type,
        )
        self.record(entry)
        logger.debug(
            "llm_usage_recorded",
            model=model,
            total_tokens=total,
            estimated_cost=round(entry.estimated_cost, 6),
        )
        return entry

    def get_total(self, since: Optional[datetime] = None) -> UsageSummary:
        """
        Fold records at or after `since` (all records when None).

        Naive datetimes, on either side, are interpreted as local time.
        """
        if since is not None:
            since = _aware(since)
        summary = UsageSummary()
        for entry in self._records:
            if since is not None and _aware(entry.timestamp) < since:
                continue
            summary.tokens += entry.total_tokens
            summary.cost += entry.estimated_cost
            summary.request_count += 1
        return summary

    def get_daily(self) -> UsageSummary:
        """Totals since local midnight."""
        start_of_day = _aware(self._now()).replace(hour=0, minute=0, second=0, microsecond=0)
        return self.get_total(since=start_of_day)

    def get_recent(self, window: timedelta) -> UsageSummary:
        return self.get_total(since=self._now() - window)

    def records(self) -> List[UsageRecord]:
        return list(self._records)

    def clear(self) -> None:
        self._records.clear()
