"""
Request orchestration for LLM-backed suggestions.

Pipeline for one logical request:
1. Response cache lookup (hits return immediately, even offline)
2. Offline check: park the request in the OfflineQueue and raise OfflineQueuedError
3. Rate limiter acquire
4. Auth routing + transport, wrapped by RetryExecutor, inside a CancelHandle
5. Parse/repair the model text (fallback result if unusable)
6. Usage accounting, then cache store

Every component is an owned instance passed in at construction, so tests
build isolated orchestrators; get_orchestrator() is a convenience accessor.
"""
import asyncio
import hashlib
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from replyengine.core.cancellation import CancellationRegistry
from replyengine.core.config import Settings, get_settings
from replyengine.core.errors import (
    APIError,
    ErrorCode,
    OfflineQueuedError,
    classify_error,
)
from replyengine.core.logging import (
    configure_logging,
    generate_request_id,
    generate_trace_id,
    get_logger,
    get_request_id,
    get_trace_id,
    set_request_id,
    set_trace_id,
)
from replyengine.core.metrics import (
    record_llm_error,
    record_llm_latency,
    record_llm_request,
    record_parse_fallback,
)
from replyengine.core.rate_limit import RateLimiter
from replyengine.core.retry import RetryExecutor, RetryPolicy
from replyengine.core.storage import JsonFileStore, KeyValueStore
from replyengine.services.ai.auth_router import AuthRouter
from replyengine.services.ai.cache import ResponseCache
from replyengine.services.ai.llm_client import LLMClient
from replyengine.services.ai.offline_queue import OfflineQueue
from replyengine.services.ai.parser import (
    fallback_result,
    parse_analysis,
    score_response_quality,
)
from replyengine.services.ai.schema import (
    AnalysisResult,
    AuthMode,
    ChatMessage,
    CompletionResult,
    ReplayReport,
    RequestDescriptor,
    RequestType,
    UsageSummary,
)
from replyengine.services.ai.usage import UsageTracker

logger = get_logger(__name__)

MessageLike = Union[ChatMessage, Mapping[str, Any]]


def _to_messages(messages: Iterable[MessageLike]) -> tuple:
    return tuple(
        m if isinstance(m, ChatMessage) else ChatMessage.model_validate(dict(m))
        for m in messages
    )


def _last_user_text(messages: Iterable[ChatMessage]) -> str:
    for message in reversed(list(messages)):
        if message.role != "user":
            continue
        if isinstance(message.content, str):
            return message.content
        return " ".join(
            str(part.get("text", "")) for part in message.content if part.get("type") == "text"
        )
    return ""


def image_digest_for(messages: Iterable[ChatMessage]) -> str:
    """md5 over every image_url in the messages, in order."""
    digest = hashlib.md5()
    for message in messages:
        if isinstance(message.content, str):
            continue
        for part in message.content:
            if part.get("type") != "image_url":
                continue
            image_url = part.get("image_url") or {}
            url = image_url.get("url", "") if isinstance(image_url, dict) else str(image_url)
            digest.update(url.encode("utf-8"))
    return digest.hexdigest()


class RequestOrchestrator:
    """Composes cache, queue, limiter, retry, cancellation, routing and parsing."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        cache: Optional[ResponseCache] = None,
        offline_queue: Optional[OfflineQueue] = None,
        usage_tracker: Optional[UsageTracker] = None,
        cancellations: Optional[CancellationRegistry] = None,
        retry_executor: Optional[RetryExecutor] = None,
        auth_router: Optional[AuthRouter] = None,
        store: Optional[KeyValueStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.rate_limiter = rate_limiter or RateLimiter(
            max_tokens=s.rate_limit_max_tokens,
            refill_rate_per_second=s.rate_limit_refill_per_second,
        )
        self.cache = cache or ResponseCache(
            max_entries=s.cache_max_entries,
            default_ttl_seconds=s.cache_ttl_seconds,
        )
        self.offline_queue = offline_queue or OfflineQueue(max_size=s.queue_max_size)
        self.usage_tracker = usage_tracker or UsageTracker(capacity=s.usage_capacity)
        self.cancellations = cancellations or CancellationRegistry()

        self.text_retry_policy = RetryPolicy(
            max_retries=s.retry_max_retries,
            base_delay=s.retry_base_delay_seconds,
            max_delay=s.retry_max_delay_seconds,
        )
        self.image_retry_policy = self.text_retry_policy.with_max_retries(
            s.retry_image_max_retries
        )
        self.retry_executor = retry_executor or RetryExecutor(self.text_retry_policy)

        self._client: Optional[LLMClient] = None
        if auth_router is None:
            self._client = LLMClient(http_client)
            auth_router = AuthRouter(
                settings=s,
                store=store or JsonFileStore(s.state_file_path),
                client=self._client,
            )
        self.auth_router = auth_router
        self._replay_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def generate_flirt_response(
        self,
        messages: Iterable[MessageLike],
        culture: str,
        message: Optional[str] = None,
        context: Optional[str] = None,
        auth_mode: AuthMode = AuthMode.PROXY,
        api_key: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Suggest replies to the latest message of a conversation.

        Args:
            messages: Prompt messages (system + user) built by the caller
            culture: Target culture/tone, part of the cache identity
            message: The message being answered; defaults to the last user message text
            context: Optional extra context, part of the cache identity
            auth_mode: PROXY (shared credential) or DIRECT (BYOK)
            api_key: Caller credential for DIRECT mode
            request_id: Id to cancel the call with; generated when omitted
        """
        chat = _to_messages(messages)
        descriptor = RequestDescriptor(
            request_type=RequestType.FLIRT_RESPONSE,
            model_name=self.settings.text_model,
            messages=chat,
            cache_key_params={
                "culture": culture,
                "message": message if message is not None else _last_user_text(chat),
                "context": context,
            },
            auth_mode=auth_mode,
            api_key=api_key,
        )
        return await self.execute(descriptor, request_id=request_id)

    async def analyze_screenshot(
        self,
        messages: Iterable[MessageLike],
        culture: str,
        image_digest: Optional[str] = None,
        auth_mode: AuthMode = AuthMode.PROXY,
        api_key: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AnalysisResult:
        """Analyze a chat screenshot with the vision model."""
        chat = _to_messages(messages)
        descriptor = RequestDescriptor(
            request_type=RequestType.SCREENSHOT_ANALYSIS,
            model_name=self.settings.vision_model,
            messages=chat,
            cache_key_params={
                "culture": culture,
                "image_digest": image_digest or image_digest_for(chat),
            },
            auth_mode=auth_mode,
            api_key=api_key,
        )
        return await self.execute(descriptor, request_id=request_id)

    async def execute(
        self,
        descriptor: RequestDescriptor,
        request_id: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Run one request through the full pipeline.

        Raises:
            OfflineQueuedError: Offline; the request was queued for replay
            APIError: Classified failure after retries (CANCELLED if cancelled)
        """
        request_id = request_id or generate_request_id()
        previous_request_id = get_request_id()
        set_request_id(request_id)
        try:
            return await self._execute(descriptor, request_id)
        finally:
            set_request_id(previous_request_id)

    async def _execute(self, descriptor: RequestDescriptor, request_id: str) -> AnalysisResult:
        request_type = descriptor.request_type
        label = request_type.value
        auth = descriptor.auth_mode.value

        cached = self.cache.get(request_type, descriptor.cache_key_params)
        if cached is not None:
            record_llm_request(label, auth, "cache_hit")
            logger.info("llm_request_cache_hit", request_type=label)
            return cached

        if not self.offline_queue.is_online():
            queued_id = self.offline_queue.add(request_type, self._queue_params(descriptor))
            record_llm_request(label, auth, "queued")
            raise OfflineQueuedError(queued_id, label)

        policy = self.image_retry_policy if descriptor.is_image_request else self.text_retry_policy
        start = time.perf_counter()
        try:
            async with self.cancellations.track(request_id) as handle:
                completion = await handle.run(self._call(descriptor, policy))
        except Exception as exc:
            error = classify_error(exc)
            outcome = "cancelled" if error.code == ErrorCode.CANCELLED else "error"
            record_llm_request(label, auth, outcome)
            record_llm_error(label, error.code.value)
            logger.warning(
                "llm_request_failed",
                request_type=label,
                auth_mode=auth,
                code=error.code.value,
                http_status=error.http_status,
                error=error.message,
            )
            if error is exc:
                raise
            raise error from exc
        finally:
            record_llm_latency(label, auth, time.perf_counter() - start)

        result = parse_analysis(completion.content)
        parsed = result is not None
        if result is None:
            record_parse_fallback(label)
            logger.warning(
                "llm_parse_fallback",
                request_type=label,
                content_length=len(completion.content),
            )
            result = fallback_result(request_type)

        self.usage_tracker.record_completion(request_type, descriptor.model_name, completion.usage)
        # Canned fallbacks are never cached.
        if parsed:
            self.cache.set(request_type, descriptor.cache_key_params, result)

        record_llm_request(label, auth, "success" if parsed else "fallback")
        self._log_completed(descriptor, completion, result, time.perf_counter() - start)
        return result

    async def _call(self, descriptor: RequestDescriptor, policy: RetryPolicy) -> CompletionResult:
        await self.rate_limiter.acquire()
        return await self.retry_executor.run(
            lambda: self.auth_router.route(descriptor),
            policy=policy,
        )

    def _queue_params(self, descriptor: RequestDescriptor) -> Dict[str, Any]:
        # api_key is excluded from serialization; replay falls back to LLM_API_KEY.
        return descriptor.model_dump(mode="json")

    def _log_completed(
        self,
        descriptor: RequestDescriptor,
        completion: CompletionResult,
        result: AnalysisResult,
        duration_seconds: float,
    ) -> None:
        quota = completion.quota
        logger.info(
            "llm_request_completed",
            request_type=descriptor.request_type.value,
            auth_mode=completion.auth_mode.value,
            model=completion.model,
            total_tokens=completion.usage.total_tokens,
            duration_seconds=round(duration_seconds, 3),
            quality_score=score_response_quality(result),
            remaining_today=quota.remaining_today if quota else None,
        )

    # ------------------------------------------------------------------
    # Offline replay
    # ------------------------------------------------------------------

    async def replay_offline_queue(self) -> ReplayReport:
        """
        Replay queued requests once each, oldest first, while online.

        Successful replays are removed. Retryable failures go back to the
        tail until they have failed queue_max_replays times; permanent
        failures are dropped. A cancelled replay stops the pass and keeps
        the request.
        """
        report = ReplayReport()
        previous_trace_id = get_trace_id()
        set_trace_id(generate_trace_id())
        try:
            await self._replay_pass(report)
        finally:
            set_trace_id(previous_trace_id)
        return report

    async def _replay_pass(self, report: ReplayReport) -> None:
        async with self._replay_lock:
            for _ in range(self.offline_queue.size()):
                if not self.offline_queue.is_online():
                    break
                item = self.offline_queue.peek_next()
                if item is None:
                    break

                try:
                    descriptor = RequestDescriptor.model_validate(item.params)
                except ValidationError as e:
                    logger.warning("offline_replay_invalid", queued_id=item.id, error=str(e))
                    self.offline_queue.remove(item.id)
                    report.failed += 1
                    continue

                try:
                    await self.execute(descriptor)
                except APIError as error:
                    if error.code == ErrorCode.CANCELLED:
                        break
                    report.failed += 1
                    if error.retryable and item.retry_count + 1 < self.settings.queue_max_replays:
                        self.offline_queue.requeue(item.id)
                    else:
                        self.offline_queue.remove(item.id)
                        logger.warning(
                            "offline_replay_dropped",
                            queued_id=item.id,
                            code=error.code.value,
                            retry_count=item.retry_count + 1,
                        )
                else:
                    self.offline_queue.remove(item.id)
                    report.processed += 1

            report.remaining = self.offline_queue.size()

        logger.info(
            "offline_replay_finished",
            processed=report.processed,
            failed=report.failed,
            remaining=report.remaining,
        )

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def cancel_request(self, request_id: str) -> bool:
        return self.cancellations.cancel(request_id)

    def cancel_all_requests(self) -> int:
        return self.cancellations.cancel_all()

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def get_usage(self, since: Optional[datetime] = None) -> UsageSummary:
        return self.usage_tracker.get_total(since)

    def get_daily_usage(self) -> UsageSummary:
        return self.usage_tracker.get_daily()

    def is_online(self) -> bool:
        return self.offline_queue.is_online()

    def set_online(self, online: bool) -> None:
        self.offline_queue.set_online(online)

    async def aclose(self) -> None:
        """Cancel in-flight requests and release the HTTP connection pool."""
        self.cancel_all_requests()
        if self._client is not None:
            await self._client.aclose()


_orchestrator: Optional[RequestOrchestrator] = None


def get_orchestrator() -> RequestOrchestrator:
    """
    Process-wide orchestrator built from get_settings().

    The first call also configures logging from LOG_LEVEL and LOG_JSON.
    """
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        configure_logging(log_level=settings.log_level, json_output=settings.log_json)
        _orchestrator = RequestOrchestrator(settings)
    return _orchestrator


def reset_orchestrator() -> None:
    """Drop the process-wide instance (tests, settings reload)."""
    global _orchestrator
    _orchestrator = None
