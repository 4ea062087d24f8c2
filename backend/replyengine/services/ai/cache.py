"""
In-process response cache for parsed LLM results.

Cache keys: llm:{request_type}:{md5(canonical_json(params))}
- params are serialized with sorted keys and fixed separators, so two
  logically identical requests hash to the same key whatever the field order

Limits:
- Max entries: 100 (the oldest-inserted entry is evicted first)
- TTL: 5 minutes, checked lazily on read
"""
import hashlib
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from replyengine.core.logging import get_logger
from replyengine.core.metrics import (
    record_cache_hit,
    record_cache_miss,
    update_cache_size,
)
from replyengine.services.ai.schema import AnalysisResult, RequestType

logger = get_logger(__name__)

DEFAULT_MAX_ENTRIES = 100
DEFAULT_TTL_SECONDS = 5 * 60  # 5 minutes


def _canonical_params(params: Mapping[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def make_cache_key(request_type: RequestType, params: Mapping[str, Any]) -> str:
    """Deterministic cache key for a request type and its logical parameters."""
    digest = hashlib.md5(_canonical_params(params).encode("utf-8")).hexdigest()
    return f"llm:{RequestType(request_type).value}:{digest}"


@dataclass
class CacheEntry:
    key: str
    payload: AnalysisResult
    created_at: float
    expires_at: float


class ResponseCache:
    """Bounded TTL cache with insertion-order eviction."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be > 0")
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock or time.time
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, request_type: RequestType, params: Mapping[str, Any]) -> Optional[AnalysisResult]:
        """
        Look up a cached result.

        Returns:
            A copy of the cached AnalysisResult, or None when absent or expired.
            Expired entries are removed.
        """
        key = make_cache_key(request_type, params)
        entry = self._entries.get(key)
        label = RequestType(request_type).value

        if entry is not None and self._clock() > entry.expires_at:
            del self._entries[key]
            update_cache_size(len(self._entries))
            logger.debug("response_cache_expired", key=key)
            entry = None

        if entry is None:
            self._misses += 1
            record_cache_miss(label)
            logger.debug("response_cache_miss", request_type=label, key=key)
            return None

        self._hits += 1
        record_cache_hit(label)
        logger.debug("response_cache_hit", request_type=label, key=key)
        return entry.payload.model_copy(deep=True)

    def set(
        self,
        request_type: RequestType,
        params: Mapping[str, Any],
        payload: AnalysisResult,
        ttl_seconds: Optional[float] = None,
    ) -> str:
        """
        Store a result, evicting the oldest entry when full.

        Returns:
            The cache key the payload was stored under
        """
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be > 0")

        key = make_cache_key(request_type, params)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload.model_copy(deep=True),
            created_at=now,
            expires_at=now + ttl,
        )

        # Replace in place, refreshing insertion order.
        self._entries.pop(key, None)
        while len(self._entries) >= self.max_entries:
            evicted_key, _ = self._entries.popitem(last=False)
            logger.debug("response_cache_evicted", key=evicted_key)
        self._entries[key] = entry

        update_cache_size(len(self._entries))
        return key

    def delete(self, request_type: RequestType, params: Mapping[str, Any]) -> bool:
        removed = self._entries.pop(make_cache_key(request_type, params), None) is not None
        if removed:
            update_cache_size(len(self._entries))
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0
        update_cache_size(0)

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            update_cache_size(len(self._entries))
            logger.info("response_cache_cleanup", removed=len(expired))
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
        }
