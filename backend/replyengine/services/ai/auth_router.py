"""
Per-call routing between direct (BYOK) and proxy authentication.

Direct mode:
- Bearer = caller-supplied key (falls back to LLM_API_KEY)
- POST {LLM_API_BASE}/chat/completions

Proxy mode:
- Bearer = long-lived session token from POST {PROXY_BASE_URL}/auth/register
- POST {PROXY_BASE_URL}/proxy/chat/completions
- Session and device id are persisted through a KeyValueStore; the device
  id is generated once and never regenerated

Both modes return the same CompletionResult shape.
"""
import asyncio
import json
import uuid
from typing import Optional

from pydantic import ValidationError

from replyengine.core.config import Settings
from replyengine.core.errors import APIError, ErrorCode
from replyengine.core.logging import get_logger
from replyengine.core.storage import KeyValueStore
from replyengine.services.ai.llm_client import LLMClient
from replyengine.services.ai.schema import (
    AuthMode,
    CompletionResult,
    ProxySession,
    ProxyUsage,
    RequestDescriptor,
)

logger = get_logger(__name__)

DEVICE_ID_KEY = "device_id"
PROXY_SESSION_KEY = "proxy_session"


def generate_device_id() -> str:
    return f"dev_{uuid.uuid4().hex}"


class AuthRouter:
    """Chooses the endpoint and credential for each call and owns the proxy session."""

    def __init__(self, settings: Settings, store: KeyValueStore, client: LLMClient):
        self.settings = settings
        self.store = store
        self.client = client
        self._session: Optional[ProxySession] = None
        self._loaded = False
        self._session_lock = asyncio.Lock()

    @property
    def proxy_user_id(self) -> Optional[str]:
        return self._session.user_id if self._session else None

    def timeout_for(self, descriptor: RequestDescriptor) -> float:
        if descriptor.is_image_request or descriptor.model_name == self.settings.vision_model:
            return self.settings.image_timeout_seconds
        return self.settings.text_timeout_seconds

    def _proxy_url(self, path: str) -> str:
        return f"{self.settings.proxy_base_url.rstrip('/')}{path}"

    async def route(self, descriptor: RequestDescriptor) -> CompletionResult:
        """Perform one chat-completion attempt in the descriptor's auth mode."""
        timeout = self.timeout_for(descriptor)

        if descriptor.auth_mode == AuthMode.DIRECT:
            api_key = descriptor.api_key or self.settings.api_key
            if not api_key:
                raise APIError(ErrorCode.INVALID_API_KEY, "No API key configured for direct mode")
            url = f"{self.settings.api_base.rstrip('/')}/chat/completions"
            return await self.client.chat_completion(
                url, descriptor, api_key, timeout, AuthMode.DIRECT
            )

        session = await self.ensure_session()
        result = await self.client.chat_completion(
            self._proxy_url("/proxy/chat/completions"),
            descriptor,
            session.token,
            timeout,
            AuthMode.PROXY,
        )
        if result.quota is not None:
            logger.debug(
                "proxy_quota",
                tier=result.quota.tier,
                used_today=result.quota.used_today,
                remaining_today=result.quota.remaining_today,
            )
        return result

    async def get_device_id(self) -> str:
        device_id = await self.store.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = generate_device_id()
            await self.store.set(DEVICE_ID_KEY, device_id)
            logger.info("device_id_created")
        return device_id

    async def _load_session(self) -> None:
        if self._loaded:
            return
        raw = await self.store.get(PROXY_SESSION_KEY)
        if raw:
            try:
                self._session = ProxySession.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                logger.warning("proxy_session_invalid", error=str(e))
                await self.store.delete(PROXY_SESSION_KEY)
        self._loaded = True

    async def _register(self) -> ProxySession:
        device_id = await self.get_device_id()
        data = await self.client.request_json(
            "POST",
            self._proxy_url("/auth/register"),
            timeout_seconds=self.settings.proxy_auth_timeout_seconds,
            json_payload={"deviceId": device_id},
        )
        try:
            session = ProxySession.model_validate(data)
        except ValidationError as exc:
            raise APIError(ErrorCode.UNKNOWN_ERROR, "Malformed registration response") from exc

        await self.store.set(
            PROXY_SESSION_KEY,
            json.dumps(session.model_dump(by_alias=True)),
        )
        logger.info(
            "proxy_registered",
            user_id=session.user_id,
            tier=session.tier,
            daily_limit=session.daily_limit,
        )
        return session

    async def ensure_session(self) -> ProxySession:
        """Return the persisted session, registering once if there is none."""
        async with self._session_lock:
            await self._load_session()
            if self._session is None:
                self._session = await self._register()
            return self._session

    async def get_usage(self) -> Optional[ProxyUsage]:
        """Server-reported quota, or None if it cannot be fetched."""
        try:
            session = await self.ensure_session()
            data = await self.client.request_json(
                "GET",
                self._proxy_url("/usage"),
                timeout_seconds=self.settings.proxy_info_timeout_seconds,
                token=session.token,
            )
            return ProxyUsage.model_validate(data)
        except Exception as e:
            logger.warning("proxy_usage_failed", error=str(e), error_type=type(e).__name__)
            return None

    async def check_health(self) -> bool:
        """True only if the proxy is up and holds an upstream key."""
        try:
            data = await self.client.request_json(
                "GET",
                self._proxy_url("/health"),
                timeout_seconds=self.settings.proxy_info_timeout_seconds,
            )
        except Exception as e:
            logger.warning("proxy_health_failed", error=str(e), error_type=type(e).__name__)
            return False
        return isinstance(data, dict) and data.get("status") == "ok" and data.get("hasApiKey") is True

    async def clear_session(self) -> None:
        """Forget the proxy session (logout/reset). The device id is kept."""
        async with self._session_lock:
            self._session = None
            self._loaded = False
            await self.store.delete(PROXY_SESSION_KEY)
        logger.info("proxy_session_cleared")
