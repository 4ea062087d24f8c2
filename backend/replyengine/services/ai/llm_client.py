"""
Async HTTP transport for OpenAI-compatible chat completions.

Design constraints:
- No provider SDKs; plain httpx against the chat-completion wire contract
- One shared httpx.AsyncClient per orchestrator (connection pooling)
- Errors are raised as-is (httpx exceptions, APIError for malformed bodies)
  and classified by the caller's RetryExecutor

Wire contract:
- Request body: {model, messages, temperature, max_tokens}, bearer credential
- Response body: {choices: [{message: {content}}], usage: {...}, _flirtkey?: {...}}
"""
import asyncio
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from replyengine.core.errors import APIError, ErrorCode
from replyengine.core.logging import get_logger
from replyengine.services.ai.schema import (
    AuthMode,
    CompletionResult,
    QuotaInfo,
    RequestDescriptor,
    TokenUsage,
)

logger = get_logger(__name__)

QUOTA_FIELD = "_flirtkey"


def _bearer_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _token_count(raw_usage: Dict[str, Any], key: str) -> int:
    value = raw_usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


def parse_completion(data: Any, fallback_model: str, auth_mode: AuthMode) -> CompletionResult:
    """
    Convert a chat-completion response body into a CompletionResult.

    Usage and quota blocks are optional metadata; malformed ones are ignored
    rather than failing a completion whose content is usable.

    Raises:
        APIError: UNKNOWN_ERROR if the body has no message content
    """
    if not isinstance(data, dict):
        raise APIError(ErrorCode.UNKNOWN_ERROR, "Malformed completion response")

    choices = data.get("choices") or []
    content = None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content:
        raise APIError(ErrorCode.UNKNOWN_ERROR, "Empty response from model")

    raw_usage = data.get("usage")
    if not isinstance(raw_usage, dict):
        raw_usage = {}
    prompt_tokens = _token_count(raw_usage, "prompt_tokens")
    completion_tokens = _token_count(raw_usage, "completion_tokens")
    usage = TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=_token_count(raw_usage, "total_tokens") or prompt_tokens + completion_tokens,
    )

    quota = None
    raw_quota = data.get(QUOTA_FIELD)
    if isinstance(raw_quota, dict) and raw_quota.get("tier"):
        try:
            quota = QuotaInfo.model_validate(raw_quota)
        except ValidationError as e:
            logger.warning("proxy_quota_invalid", error_count=e.error_count())

    return CompletionResult(
        content=content,
        usage=usage,
        model=str(data.get("model") or fallback_model),
        auth_mode=auth_mode,
        quota=quota,
    )


class LLMClient:
    """Thin async client over one pooled httpx.AsyncClient."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http = http_client or httpx.AsyncClient()
        self._owns_client = http_client is None

    async def request_json(
        self,
        method: str,
        url: str,
        timeout_seconds: float,
        token: Optional[str] = None,
        json_payload: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send a JSON request and return the decoded body.

        The whole exchange is bounded by timeout_seconds; exceeding it raises
        APIError(TIMEOUT).

        Raises:
            httpx.HTTPStatusError: For non-2xx responses
            httpx.TransportError: For connection-level failures
        """
        try:
            response = await asyncio.wait_for(
                self._http.request(
                    method,
                    url,
                    headers=_bearer_headers(token),
                    json=json_payload,
                    timeout=timeout_seconds,
                ),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise APIError(
                ErrorCode.TIMEOUT,
                f"No response within {timeout_seconds:g}s",
            ) from None

        if response.is_error:
            logger.debug(
                "llm_http_error_response",
                url=url,
                status_code=response.status_code,
            )
        response.raise_for_status()

        try:
            return response.json()
        except ValueError as exc:
            raise APIError(ErrorCode.UNKNOWN_ERROR, "Response body is not valid JSON") from exc

    async def chat_completion(
        self,
        url: str,
        descriptor: RequestDescriptor,
        token: Optional[str],
        timeout_seconds: float,
        auth_mode: AuthMode,
    ) -> CompletionResult:
        """POST a chat completion and normalize the response."""
        data = await self.request_json(
            "POST",
            url,
            timeout_seconds=timeout_seconds,
            token=token,
            json_payload=descriptor.to_wire(),
        )
        return parse_completion(data, descriptor.model_name, auth_mode)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
