"""
Wire-level tests for AuthRouter and LLMClient.

All HTTP goes through httpx.MockTransport; no real network.
"""
import json
from typing import Callable, List

import httpx
import pytest

from replyengine.core.errors import APIError, ErrorCode, classify_error
from replyengine.core.storage import InMemoryStore, JsonFileStore
from replyengine.services.ai.auth_router import (
    DEVICE_ID_KEY,
    PROXY_SESSION_KEY,
    AuthRouter,
)
from replyengine.services.ai.llm_client import LLMClient, parse_completion
from replyengine.services.ai.schema import (
    AuthMode,
    ChatMessage,
    RequestDescriptor,
    RequestType,
)

COMPLETION = {
    "choices": [{"message": {"content": '{"suggestions": []}'}}],
    "usage": {"prompt_tokens": 12, "completion_tokens": 30, "total_tokens": 42},
}

REGISTRATION = {
    "token": "session-token",
    "userId": "user-1",
    "tier": "free",
    "dailyLimit": 20,
    "usedToday": 0,
    "remainingToday": 20,
}


class RecordingHandler:
    """MockTransport handler that records requests and dispatches by path."""

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


def _descriptor(auth_mode=AuthMode.PROXY, api_key=None, image=False) -> RequestDescriptor:
    content = "Hey! How was your day?"
    if image:
        content = [
            {"type": "text", "text": "Analyze"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
        ]
    return RequestDescriptor(
        request_type=RequestType.SCREENSHOT_ANALYSIS if image else RequestType.FLIRT_RESPONSE,
        model_name="gpt-4o" if image else "gpt-4o-mini",
        messages=(
            ChatMessage(role="system", content="Respond with JSON only."),
            ChatMessage(role="user", content=content),
        ),
        cache_key_params={"culture": "western"},
        auth_mode=auth_mode,
        api_key=api_key,
    )


def _router(settings, handler: Callable, store=None) -> AuthRouter:
    client = LLMClient(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return AuthRouter(settings=settings, store=store or InMemoryStore(), client=client)


@pytest.mark.asyncio
async def test_direct_mode_uses_caller_key(settings):
    handler = RecordingHandler({("POST", "/v1/chat/completions"): COMPLETION})
    router = _router(settings, handler)

    result = await router.route(_descriptor(AuthMode.DIRECT, api_key="sk-user"))

    request = handler.requests[0]
    assert str(request.url) == "https://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-user"
    assert json.loads(request.content) == {
        "model": "gpt-4o-mini",
        "messages": [
            {"role": "system", "content": "Respond with JSON only."},
            {"role": "user", "content": "Hey! How was your day?"},
        ],
        "temperature": 0.8,
        "max_tokens": 1000,
    }
    assert result.auth_mode == AuthMode.DIRECT
    assert result.usage.total_tokens == 42
    assert result.quota is None


@pytest.mark.asyncio
async def test_direct_mode_falls_back_to_configured_key(settings):
    from dataclasses import replace

    handler = RecordingHandler({("POST", "/v1/chat/completions"): COMPLETION})
    router = _router(replace(settings, api_key="sk-env"), handler)

    await router.route(_descriptor(AuthMode.DIRECT))

    assert handler.requests[0].headers["Authorization"] == "Bearer sk-env"


@pytest.mark.asyncio
async def test_direct_mode_without_key_is_invalid_api_key(settings):
    handler = RecordingHandler({})
    router = _router(settings, handler)

    with pytest.raises(APIError) as exc_info:
        await router.route(_descriptor(AuthMode.DIRECT))

    assert exc_info.value.code == ErrorCode.INVALID_API_KEY
    assert handler.requests == []


@pytest.mark.asyncio
async def test_proxy_mode_registers_once_and_persists(settings):
    handler = RecordingHandler({
        ("POST", "/auth/register"): REGISTRATION,
        ("POST", "/proxy/chat/completions"): COMPLETION,
    })
    store = InMemoryStore()
    router = _router(settings, handler, store)

    await router.route(_descriptor())
    await router.route(_descriptor())

    assert handler.paths() == [
        "/auth/register",
        "/proxy/chat/completions",
        "/proxy/chat/completions",
    ]
    register_body = json.loads(handler.requests[0].content)
    assert register_body["deviceId"].startswith("dev_")
    assert handler.requests[1].headers["Authorization"] == "Bearer session-token"
    assert router.proxy_user_id == "user-1"

    saved = store.snapshot()
    assert saved[DEVICE_ID_KEY] == register_body["deviceId"]
    assert json.loads(saved[PROXY_SESSION_KEY])["token"] == "session-token"


@pytest.mark.asyncio
async def test_proxy_session_survives_restart(settings, tmp_path):
    handler = RecordingHandler({
        ("POST", "/auth/register"): REGISTRATION,
        ("POST", "/proxy/chat/completions"): COMPLETION,
    })
    state_file = tmp_path / "state.json"

    await _router(settings, handler, JsonFileStore(state_file)).route(_descriptor())
    restarted = _router(settings, handler, JsonFileStore(state_file))
    await restarted.route(_descriptor())

    assert handler.paths().count("/auth/register") == 1
    assert restarted.proxy_user_id == "user-1"


@pytest.mark.asyncio
async def test_device_id_is_stable(settings):
    store = InMemoryStore({DEVICE_ID_KEY: "dev_existing"})
    handler = RecordingHandler({("POST", "/auth/register"): REGISTRATION})
    router = _router(settings, handler, store)

    await router.ensure_session()
    assert json.loads(handler.requests[0].content) == {"deviceId": "dev_existing"}

    await router.clear_session()
    await router.ensure_session()
    assert json.loads(handler.requests[1].content) == {"deviceId": "dev_existing"}


@pytest.mark.asyncio
async def test_clear_session_deletes_persisted_state(settings):
    store = InMemoryStore()
    handler = RecordingHandler({("POST", "/auth/register"): REGISTRATION})
    router = _router(settings, handler, store)
    await router.ensure_session()

    await router.clear_session()

    assert PROXY_SESSION_KEY not in store.snapshot()
    assert DEVICE_ID_KEY in store.snapshot()
    assert router.proxy_user_id is None


@pytest.mark.asyncio
async def test_corrupt_persisted_session_triggers_registration(settings):
    store = InMemoryStore({PROXY_SESSION_KEY: "{not json"})
    handler = RecordingHandler({("POST", "/auth/register"): REGISTRATION})
    router = _router(settings, handler, store)

    session = await router.ensure_session()

    assert session.token == "session-token"
    assert handler.paths() == ["/auth/register"]


@pytest.mark.asyncio
async def test_proxy_quota_metadata_is_surfaced(settings):
    body = dict(COMPLETION, _flirtkey={
        "tier": "free",
        "usedToday": 3,
        "dailyLimit": 20,
        "remainingToday": 17,
    })
    handler = RecordingHandler({
        ("POST", "/auth/register"): REGISTRATION,
        ("POST", "/proxy/chat/completions"): body,
    })

    result = await _router(settings, handler).route(_descriptor())

    assert result.auth_mode == AuthMode.PROXY
    assert result.quota.used_today == 3
    assert result.quota.remaining_today == 17


@pytest.mark.asyncio
async def test_proxy_error_status_is_classifiable(settings):
    handler = RecordingHandler({
        ("POST", "/auth/register"): REGISTRATION,
        ("POST", "/proxy/chat/completions"): lambda r: httpx.Response(
            403, json={"error": "Daily limit reached"}
        ),
    })

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await _router(settings, handler).route(_descriptor())

    error = classify_error(exc_info.value)
    assert error.code == ErrorCode.INSUFFICIENT_QUOTA
    assert error.message == "Daily limit reached"


@pytest.mark.asyncio
async def test_get_usage(settings):
    usage = {
        "tier": "free",
        "dailyLimit": 20,
        "usedToday": 5,
        "remainingToday": 15,
        "resetsAt": "2026-01-02T00:00:00Z",
    }
    handler = RecordingHandler({
        ("POST", "/auth/register"): REGISTRATION,
        ("GET", "/usage"): usage,
    })

    result = await _router(settings, handler).get_usage()

    assert result.used_today == 5
    assert result.resets_at == "2026-01-02T00:00:00Z"
    assert handler.requests[-1].headers["Authorization"] == "Bearer session-token"


@pytest.mark.asyncio
async def test_get_usage_returns_none_on_failure(settings):
    handler = RecordingHandler({
        ("POST", "/auth/register"): REGISTRATION,
        ("GET", "/usage"): lambda r: httpx.Response(500, json={}),
    })
    assert await _router(settings, handler).get_usage() is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body,expected",
    [
        ({"status": "ok", "hasApiKey": True}, True),
        ({"status": "ok", "hasApiKey": False}, False),
        ({"status": "degraded", "hasApiKey": True}, False),
        ({}, False),
    ],
)
async def test_check_health(settings, body, expected):
    handler = RecordingHandler({("GET", "/health"): body})
    assert await _router(settings, handler).check_health() is expected


@pytest.mark.asyncio
async def test_check_health_network_failure(settings):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    assert await _router(settings, refuse).check_health() is False


def test_timeouts_by_request_kind(settings):
    router = _router(settings, RecordingHandler({}))
    assert router.timeout_for(_descriptor()) == 30.0
    assert router.timeout_for(_descriptor(image=True)) == 60.0


def test_parse_completion_rejects_empty_content():
    with pytest.raises(APIError) as exc_info:
        parse_completion({"choices": []}, "gpt-4o-mini", AuthMode.DIRECT)
    assert exc_info.value.code == ErrorCode.UNKNOWN_ERROR


def test_parse_completion_defaults_usage():
    result = parse_completion(
        {"choices": [{"message": {"content": "hi"}}]},
        "gpt-4o-mini",
        AuthMode.PROXY,
    )
    assert result.model == "gpt-4o-mini"
    assert result.usage.total_tokens == 0


def test_api_key_never_serialized():
    descriptor = _descriptor(AuthMode.DIRECT, api_key="sk-secret")
    assert "api_key" not in descriptor.model_dump()
    assert "sk-secret" not in repr(descriptor)


@pytest.mark.parametrize("raw_usage", [["not", "a", "dict"], "42 tokens", None, {"prompt_tokens": "many"}])
def test_parse_completion_ignores_malformed_usage(raw_usage):
    result = parse_completion(
        {"choices": [{"message": {"content": "hi"}}], "usage": raw_usage},
        "gpt-4o-mini",
        AuthMode.DIRECT,
    )
    assert result.content == "hi"
    assert result.usage.prompt_tokens == 0


def test_parse_completion_drops_malformed_quota():
    result = parse_completion(
        dict(COMPLETION, _flirtkey={"tier": "free", "usedToday": "n/a"}),
        "gpt-4o-mini",
        AuthMode.PROXY,
    )
    assert result.quota is None
    assert result.usage.total_tokens == 42
