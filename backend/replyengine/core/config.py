"""
Environment-driven configuration for the orchestration core.

Values are read from the process environment. A `.env` file in the working
directory (or the path in REPLYENGINE_ENV_FILE) is loaded first without
overriding variables that are already set.

Environment configuration:
- LLM_API_BASE: Upstream OpenAI-compatible base URL (default: https://api.openai.com/v1)
- LLM_API_KEY: Default BYOK credential (optional)
- PROXY_BASE_URL: First-party proxy base URL (default: https://api.flirtkey.app)
- LLM_TEXT_MODEL / LLM_VISION_MODEL: Models for text and image requests
- LLM_TEXT_TIMEOUT_SECONDS / LLM_IMAGE_TIMEOUT_SECONDS: Per-call deadlines
- RATE_LIMIT_MAX_TOKENS / RATE_LIMIT_REFILL_PER_SECOND: Token bucket shape
- RESPONSE_CACHE_MAX_ENTRIES / RESPONSE_CACHE_TTL_SECONDS: Cache bounds
- OFFLINE_QUEUE_MAX_SIZE / OFFLINE_QUEUE_MAX_REPLAYS: Offline queue bounds
- USAGE_TRACKER_CAPACITY: Usage ring buffer capacity
- RETRY_MAX_RETRIES / RETRY_IMAGE_MAX_RETRIES / RETRY_BASE_DELAY_SECONDS /
  RETRY_MAX_DELAY_SECONDS: Backoff policy
- STATE_FILE_PATH: Where the device id and proxy session are persisted
- LOG_LEVEL / LOG_JSON: Logging output
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from replyengine.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_PROXY_BASE_URL = "https://api.flirtkey.app"
DEFAULT_STATE_FILE = Path.home() / ".replyengine" / "state.json"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one orchestrator instance."""

    api_base: str = DEFAULT_API_BASE
    api_key: Optional[str] = None
    proxy_base_url: str = DEFAULT_PROXY_BASE_URL
    text_model: str = "gpt-4o-mini"
    vision_model: str = "gpt-4o"
    text_timeout_seconds: float = 30.0
    image_timeout_seconds: float = 60.0
    proxy_auth_timeout_seconds: float = 10.0
    proxy_info_timeout_seconds: float = 5.0
    rate_limit_max_tokens: float = 10.0
    rate_limit_refill_per_second: float = 0.5
    cache_max_entries: int = 100
    cache_ttl_seconds: float = 300.0
    queue_max_size: int = 50
    queue_max_replays: int = 3
    usage_capacity: int = 1000
    retry_max_retries: int = 3
    retry_image_max_retries: int = 2
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 10.0
    state_file_path: Path = DEFAULT_STATE_FILE
    log_level: str = "INFO"
    log_json: bool = True

    def __repr__(self) -> str:
        # api_key is a credential
        key_state = "set" if self.api_key else "unset"
        return (
            f"Settings(api_base={self.api_base!r}, api_key=<{key_state}>, "
            f"proxy_base_url={self.proxy_base_url!r}, text_model={self.text_model!r}, "
            f"vision_model={self.vision_model!r})"
        )


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        env_file: Optional path to a .env file. Defaults to REPLYENGINE_ENV_FILE
            or ./.env when present.

    Returns:
        Resolved Settings

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    env_path = Path(env_file or os.getenv("REPLYENGINE_ENV_FILE", ".env"))
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug("env_loaded", env_path=str(env_path))

    state_file = os.getenv("STATE_FILE_PATH")

    return Settings(
        api_base=os.getenv("LLM_API_BASE", DEFAULT_API_BASE).rstrip("/"),
        api_key=os.getenv("LLM_API_KEY") or None,
        proxy_base_url=os.getenv("PROXY_BASE_URL", DEFAULT_PROXY_BASE_URL).rstrip("/"),
        text_model=os.getenv("LLM_TEXT_MODEL", "gpt-4o-mini"),
        vision_model=os.getenv("LLM_VISION_MODEL", "gpt-4o"),
        text_timeout_seconds=_env_float("LLM_TEXT_TIMEOUT_SECONDS", 30.0),
        image_timeout_seconds=_env_float("LLM_IMAGE_TIMEOUT_SECONDS", 60.0),
        proxy_auth_timeout_seconds=_env_float("PROXY_AUTH_TIMEOUT_SECONDS", 10.0),
        proxy_info_timeout_seconds=_env_float("PROXY_INFO_TIMEOUT_SECONDS", 5.0),
        rate_limit_max_tokens=_env_float("RATE_LIMIT_MAX_TOKENS", 10.0),
        rate_limit_refill_per_second=_env_float("RATE_LIMIT_REFILL_PER_SECOND", 0.5),
        cache_max_entries=_env_int("RESPONSE_CACHE_MAX_ENTRIES", 100),
        cache_ttl_seconds=_env_float("RESPONSE_CACHE_TTL_SECONDS", 300.0),
        queue_max_size=_env_int("OFFLINE_QUEUE_MAX_SIZE", 50),
        queue_max_replays=_env_int("OFFLINE_QUEUE_MAX_REPLAYS", 3),
        usage_capacity=_env_int("USAGE_TRACKER_CAPACITY", 1000),
        retry_max_retries=_env_int("RETRY_MAX_RETRIES", 3),
        retry_image_max_retries=_env_int("RETRY_IMAGE_MAX_RETRIES", 2),
        retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 1.0),
        retry_max_delay_seconds=_env_float("RETRY_MAX_DELAY_SECONDS", 10.0),
        state_file_path=Path(state_file).expanduser() if state_file else DEFAULT_STATE_FILE,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_env_bool("LOG_JSON", True),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Global settings accessor (loaded once)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment."""
    global _settings
    _settings = None
