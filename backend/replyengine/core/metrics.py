"""
Prometheus metrics collection module.

Metrics Categories:
- LLM call metrics: request rate, latency, errors, retries
- Accounting metrics: tokens and estimated cost per model
- Orchestration metrics: cache hits/misses, offline queue depth,
  rate limiter waits, parse fallbacks

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from replyengine.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# LLM CALL METRICS
# ============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total number of orchestrated LLM requests",
    ["request_type", "auth_mode", "outcome"],  # outcome: success, fallback, error, cancelled, cache_hit, queued
    registry=registry,
)

llm_request_duration_seconds = Histogram(
    "llm_request_duration_seconds",
    "Latency of the network path of an LLM request (retries included) in seconds",
    ["request_type", "auth_mode"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0],
    registry=registry,
)

llm_errors_total = Counter(
    "llm_errors_total",
    "Total number of classified LLM errors surfaced to callers",
    ["request_type", "code"],
    registry=registry,
)

llm_retries_total = Counter(
    "llm_retries_total",
    "Total number of retry attempts scheduled",
    ["code"],
    registry=registry,
)

# ============================================================================
# ACCOUNTING METRICS
# ============================================================================

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total number of tokens consumed",
    ["model", "kind"],  # kind: prompt, completion
    registry=registry,
)

llm_cost_usd_total = Counter(
    "llm_cost_usd_total",
    "Estimated LLM spend in USD",
    ["model"],
    registry=registry,
)

# ============================================================================
# ORCHESTRATION METRICS
# ============================================================================

response_cache_hits_total = Counter(
    "response_cache_hits_total",
    "Total number of response cache hits",
    ["request_type"],
    registry=registry,
)

response_cache_misses_total = Counter(
    "response_cache_misses_total",
    "Total number of response cache misses",
    ["request_type"],
    registry=registry,
)

response_cache_size = Gauge(
    "response_cache_size",
    "Number of entries currently held by the response cache",
    registry=registry,
)

offline_queue_size = Gauge(
    "offline_queue_size",
    "Number of requests waiting in the offline queue",
    registry=registry,
)

rate_limit_wait_seconds = Histogram(
    "rate_limit_wait_seconds",
    "Time spent waiting for a rate limiter token in seconds",
    buckets=[0.0, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0],
    registry=registry,
)

parse_fallbacks_total = Counter(
    "parse_fallbacks_total",
    "Total number of model outputs that could not be parsed and fell back to a canned result",
    ["request_type"],
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def record_llm_request(request_type: str, auth_mode: str, outcome: str) -> None:
    """
    Record an orchestrated request outcome.

    Args:
        request_type: Logical request type (e.g. "flirt-response")
        auth_mode: "proxy" or "direct"
        outcome: "success", "fallback", "error", "cancelled", "cache_hit" or "queued"
    """
    llm_requests_total.labels(
        request_type=request_type,
        auth_mode=auth_mode,
        outcome=outcome,
    ).inc()


def record_llm_latency(request_type: str, auth_mode: str, duration_seconds: float) -> None:
    """Record the latency of the network path of a request."""
    llm_request_duration_seconds.labels(
        request_type=request_type,
        auth_mode=auth_mode,
    ).observe(duration_seconds)


def record_llm_error(request_type: str, code: str) -> None:
    """Record a classified error surfaced to the caller."""
    llm_errors_total.labels(request_type=request_type, code=code).inc()


def record_llm_retry(code: str) -> None:
    """Record a scheduled retry for the given error code."""
    llm_retries_total.labels(code=code).inc()


def record_llm_tokens_and_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    cost_usd: float,
) -> None:
    """
    Record token usage and estimated cost for a completed call.

    Args:
        model: Model name reported for the call
        prompt_tokens: Prompt token count
        completion_tokens: Completion token count
        cost_usd: Estimated cost in USD
    """
    if prompt_tokens > 0:
        llm_tokens_total.labels(model=model, kind="prompt").inc(prompt_tokens)
    if completion_tokens > 0:
        llm_tokens_total.labels(model=model, kind="completion").inc(completion_tokens)
    if cost_usd > 0:
        llm_cost_usd_total.labels(model=model).inc(cost_usd)


def record_cache_hit(request_type: str) -> None:
    response_cache_hits_total.labels(request_type=request_type).inc()


def record_cache_miss(request_type: str) -> None:
    response_cache_misses_total.labels(request_type=request_type).inc()


def update_cache_size(size: int) -> None:
    response_cache_size.set(size)


def update_offline_queue_size(size: int) -> None:
    offline_queue_size.set(size)


def record_rate_limit_wait(wait_seconds: float) -> None:
    """Record how long a caller waited for a rate limiter token."""
    rate_limit_wait_seconds.observe(wait_seconds)


def record_parse_fallback(request_type: str) -> None:
    parse_fallbacks_total.labels(request_type=request_type).inc()


def get_metrics() -> bytes:
    """
    Get Prometheus metrics in text format.

    Returns:
        Prometheus metrics text format
    """
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    """Get content type for the metrics exposition format."""
    return CONTENT_TYPE_LATEST
