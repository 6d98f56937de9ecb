from __future__ import annotations

import pytest

from frmgen.config import reset_settings_cache

_PROVIDER_ENV = (
    "AI_PROVIDER",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_API_URL",
    "GOOGLE_API_KEY",
    "GOOGLE_MODEL",
    "GOOGLE_API_URL",
    "ANTHROPIC_API_KEY",
    "ANTHROPIC_MODEL",
    "ANTHROPIC_API_URL",
    "FRMGEN_PROVIDER_CONFIG",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch):
    """Keep a developer's provider keys out of the tests."""
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()
