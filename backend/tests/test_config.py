"""
Unit tests for environment-driven settings.
"""
from pathlib import Path

import pytest

from replyengine.core.config import (
    DEFAULT_STATE_FILE,
    get_settings,
    load_settings,
    reset_settings,
)

ENV_VARS = [
    "LLM_API_BASE", "LLM_API_KEY", "PROXY_BASE_URL", "LLM_TEXT_MODEL", "LLM_VISION_MODEL",
    "LLM_TEXT_TIMEOUT_SECONDS", "LLM_IMAGE_TIMEOUT_SECONDS", "PROXY_AUTH_TIMEOUT_SECONDS",
    "PROXY_INFO_TIMEOUT_SECONDS", "RATE_LIMIT_MAX_TOKENS", "RATE_LIMIT_REFILL_PER_SECOND",
    "RESPONSE_CACHE_MAX_ENTRIES", "RESPONSE_CACHE_TTL_SECONDS", "OFFLINE_QUEUE_MAX_SIZE",
    "OFFLINE_QUEUE_MAX_REPLAYS", "USAGE_TRACKER_CAPACITY", "RETRY_MAX_RETRIES",
    "RETRY_IMAGE_MAX_RETRIES", "RETRY_BASE_DELAY_SECONDS", "RETRY_MAX_DELAY_SECONDS",
    "STATE_FILE_PATH", "LOG_LEVEL", "LOG_JSON",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REPLYENGINE_ENV_FILE", str(tmp_path / "missing.env"))
    reset_settings()
    yield monkeypatch
    reset_settings()


def test_defaults(clean_env):
    settings = load_settings()

    assert settings.api_base == "https://api.openai.com/v1"
    assert settings.api_key is None
    assert settings.proxy_base_url == "https://api.flirtkey.app"
    assert settings.text_model == "gpt-4o-mini"
    assert settings.vision_model == "gpt-4o"
    assert settings.text_timeout_seconds == 30.0
    assert settings.image_timeout_seconds == 60.0
    assert settings.proxy_auth_timeout_seconds == 10.0
    assert settings.proxy_info_timeout_seconds == 5.0
    assert settings.rate_limit_max_tokens == 10.0
    assert settings.rate_limit_refill_per_second == 0.5
    assert settings.cache_max_entries == 100
    assert settings.cache_ttl_seconds == 300.0
    assert settings.queue_max_size == 50
    assert settings.queue_max_replays == 3
    assert settings.usage_capacity == 1000
    assert settings.retry_max_retries == 3
    assert settings.retry_image_max_retries == 2
    assert settings.state_file_path == DEFAULT_STATE_FILE
    assert settings.log_json is True


def test_environment_overrides(clean_env, tmp_path):
    clean_env.setenv("LLM_API_BASE", "https://llm.internal/v1/")
    clean_env.setenv("LLM_API_KEY", "sk-env")
    clean_env.setenv("RATE_LIMIT_MAX_TOKENS", "5")
    clean_env.setenv("RESPONSE_CACHE_MAX_ENTRIES", "10")
    clean_env.setenv("STATE_FILE_PATH", str(tmp_path / "s.json"))
    clean_env.setenv("LOG_JSON", "false")

    settings = load_settings()

    assert settings.api_base == "https://llm.internal/v1"
    assert settings.api_key == "sk-env"
    assert settings.rate_limit_max_tokens == 5.0
    assert settings.cache_max_entries == 10
    assert settings.state_file_path == tmp_path / "s.json"
    assert settings.log_json is False


def test_dotenv_file_is_loaded_without_overriding(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("LLM_TEXT_MODEL=gpt-4-turbo\nLLM_VISION_MODEL=from-file\n")
    clean_env.setenv("LLM_VISION_MODEL", "from-env")
    # register the variable with monkeypatch so the value load_dotenv writes is undone
    clean_env.setenv("LLM_TEXT_MODEL", "")
    clean_env.delenv("LLM_TEXT_MODEL")

    settings = load_settings(env_file=str(env_file))

    assert settings.text_model == "gpt-4-turbo"
    assert settings.vision_model == "from-env"


@pytest.mark.parametrize(
    "name,value",
    [
        ("RATE_LIMIT_REFILL_PER_SECOND", "fast"),
        ("RESPONSE_CACHE_MAX_ENTRIES", "1.5"),
        ("LLM_TEXT_TIMEOUT_SECONDS", "thirty"),
    ],
)
def test_invalid_numbers_name_the_variable(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_settings()


def test_get_settings_is_cached_until_reset(clean_env):
    first = get_settings()
    assert get_settings() is first

    clean_env.setenv("LLM_TEXT_MODEL", "gpt-4o")
    assert get_settings().text_model == "gpt-4o-mini"

    reset_settings()
    assert get_settings().text_model == "gpt-4o"


def test_repr_hides_api_key(clean_env):
    clean_env.setenv("LLM_API_KEY", "sk-very-secret")
    settings = load_settings()
    assert "sk-very-secret" not in repr(settings)
    assert "api_key=<set>" in repr(settings)


def test_settings_are_frozen(clean_env):
    settings = load_settings()
    with pytest.raises(Exception):
        settings.api_key = "x"
    assert isinstance(settings.state_file_path, Path)
