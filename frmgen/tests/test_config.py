from __future__ import annotations

from pathlib import Path

import pytest

from frmgen.config import (
    GOOGLE_API_BASE,
    OPENAI_CHAT_URL,
    RuntimeSettings,
    load_settings,
    reset_settings_cache,
    settings_from_env,
)
from frmgen.errors import ConfigurationError


def test_defaults_select_openai():
    settings = settings_from_env({})
    assert settings.provider.name == "openai"
    assert settings.provider.model == "gpt-5-2025-08-07"
    assert settings.provider.api_url == OPENAI_CHAT_URL
    assert settings.runtime == RuntimeSettings()
    assert settings.runtime.generation_timeout_s == 2700.0


def test_unknown_provider_falls_back_to_openai():
    settings = settings_from_env({"AI_PROVIDER": "mistral", "OPENAI_API_KEY": "sk-x"})
    assert settings.provider.name == "openai"
    assert settings.provider.api_key == "sk-x"


def test_google_settings():
    settings = settings_from_env({"AI_PROVIDER": "Google", "GOOGLE_API_KEY": "g-key"})
    assert settings.provider.name == "google"
    assert settings.provider.model == "gemini-2.5-pro"
    assert settings.provider.api_url == GOOGLE_API_BASE


def test_api_key_not_in_repr():
    settings = settings_from_env({"AI_PROVIDER": "anthropic", "ANTHROPIC_API_KEY": "secret-anthropic"})
    assert "secret-anthropic" not in repr(settings)


def test_missing_key_message_names_variable():
    settings = settings_from_env({"AI_PROVIDER": "anthropic"})
    with pytest.raises(ConfigurationError, match="ANTHROPIC_API_KEY is not set"):
        settings.provider.require_api_key()


def test_runtime_env_overrides_and_bad_values():
    runtime = settings_from_env(
        {"FRMGEN_PING_RETRIES": "1", "FRMGEN_GENERATION_BACKOFF_MS": "soon", "FRMGEN_PING_TIMEOUT_S": "5"}
    ).runtime
    assert runtime.ping_retries == 1
    assert runtime.generation_backoff_ms == 10_000
    assert runtime.ping_timeout_s == 5.0


def test_yaml_overrides(tmp_path: Path):
    cfg = tmp_path / "frmgen.yaml"
    cfg.write_text("generation_retries: 2\ngeneration_backoff_ms: 50\n")
    runtime = settings_from_env({"FRMGEN_PROVIDER_CONFIG": str(cfg)}).runtime
    assert runtime.generation_retries == 2
    assert runtime.generation_backoff_ms == 50
    assert runtime.ping_retries == 3


def test_yaml_unknown_keys_rejected(tmp_path: Path):
    cfg = tmp_path / "frmgen.yaml"
    cfg.write_text("retries_forever: true\n")
    with pytest.raises(ConfigurationError, match="Invalid provider config"):
        settings_from_env({"FRMGEN_PROVIDER_CONFIG": str(cfg)})


def test_load_settings_is_cached(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4o")
    first = load_settings()
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4.1")
    assert load_settings() is first
    reset_settings_cache()
    assert load_settings().provider.model == "gpt-4.1"
