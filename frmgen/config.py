from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

_LOGGER = logging.getLogger(__name__)
_SETTINGS_LOCK = threading.Lock()
_SETTINGS_CACHE: Optional["Settings"] = None
_MAX_PROVIDER_CONFIG_BYTES = 64 * 1024  # 64KiB guardrail for provider settings

PROVIDER_CONFIG_ENV = "FRMGEN_PROVIDER_CONFIG"
DEFAULT_PROVIDER = "openai"
SUPPORTED_PROVIDERS = ("openai", "google", "anthropic")

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
GOOGLE_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"


@dataclass(frozen=True)
class ProviderSettings:
    """Credentials and endpoint for one provider."""

    name: str
    model: str
    api_key: Optional[str] = field(default=None, repr=False)
    api_url: Optional[str] = None

    @property
    def api_key_env(self) -> str:
        return f"{self.name.upper()}_API_KEY"

    def require_api_key(self, purpose: str = "AI example generation") -> str:
        if not self.api_key:
            raise ConfigurationError(
                f"{self.api_key_env} is not set. Provide a valid key to enable {purpose}."
            )
        return self.api_key


@dataclass(frozen=True)
class RuntimeSettings:
    generation_timeout_s: float = 2700.0
    ping_timeout_s: float = 30.0
    connect_timeout_s: float = 30.0
    generation_retries: int = 5
    generation_backoff_ms: int = 10_000
    ping_retries: int = 3
    ping_backoff_ms: int = 1_000


@dataclass(frozen=True)
class Settings:
    provider: ProviderSettings
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)


class RuntimeOverrides(BaseModel):
    """Shape of the optional YAML file named by FRMGEN_PROVIDER_CONFIG."""

    model_config = ConfigDict(extra="forbid")

    generation_timeout_s: Optional[float] = Field(default=None, gt=0)
    ping_timeout_s: Optional[float] = Field(default=None, gt=0)
    connect_timeout_s: Optional[float] = Field(default=None, gt=0)
    generation_retries: Optional[int] = Field(default=None, ge=0)
    generation_backoff_ms: Optional[int] = Field(default=None, ge=0)
    ping_retries: Optional[int] = Field(default=None, ge=0)
    ping_backoff_ms: Optional[int] = Field(default=None, ge=0)


def load_env_files(search_roots: Optional[list[Path]] = None) -> None:
    """Load .env.local then .env from the working directory; existing variables win."""

    roots = search_roots if search_roots is not None else [Path.cwd()]
    for root in roots:
        for name in (".env.local", ".env"):
            candidate = root / name
            if candidate.is_file():
                load_dotenv(candidate, override=False)


def _get_float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        _LOGGER.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _get_int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        _LOGGER.warning("Ignoring non-integer %s=%r", name, raw)
        return default


def normalize_provider(name: Optional[str]) -> str:
    key = (name or "").strip().lower()
    if key in SUPPORTED_PROVIDERS:
        return key
    if key:
        _LOGGER.debug("Unknown AI_PROVIDER %r; falling back to %s", name, DEFAULT_PROVIDER)
    return DEFAULT_PROVIDER


def provider_settings_from_env(env: Mapping[str, str]) -> ProviderSettings:
    provider = normalize_provider(env.get("AI_PROVIDER"))
    if provider == "google":
        return ProviderSettings(
            name="google",
            model=env.get("GOOGLE_MODEL") or "gemini-2.5-pro",
            api_key=env.get("GOOGLE_API_KEY"),
            api_url=env.get("GOOGLE_API_URL") or GOOGLE_API_BASE,
        )
    if provider == "anthropic":
        return ProviderSettings(
            name="anthropic",
            model=env.get("ANTHROPIC_MODEL") or "claude-3-5-sonnet-20241022",
            api_key=env.get("ANTHROPIC_API_KEY"),
            api_url=env.get("ANTHROPIC_API_URL") or ANTHROPIC_MESSAGES_URL,
        )
    return ProviderSettings(
        name="openai",
        model=env.get("OPENAI_MODEL") or "gpt-5-2025-08-07",
        api_key=env.get("OPENAI_API_KEY"),
        api_url=env.get("OPENAI_API_URL") or OPENAI_CHAT_URL,
    )


def _load_yaml_payload(path: Path, *, max_bytes: int) -> Any:
    size = path.stat().st_size if path.exists() else 0
    if size > max_bytes:
        raise ValueError(f"{path} exceeds {max_bytes} byte limit")
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle)


def _apply_yaml_overrides(runtime: RuntimeSettings, path_value: Optional[str]) -> RuntimeSettings:
    if not path_value:
        return runtime
    path = Path(path_value)
    if not path.is_file():
        _LOGGER.warning("%s points at missing file %s", PROVIDER_CONFIG_ENV, path)
        return runtime
    try:
        raw = _load_yaml_payload(path, max_bytes=_MAX_PROVIDER_CONFIG_BYTES) or {}
        overrides = RuntimeOverrides.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid provider config {path}: {exc}") from exc
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Unable to read provider config {path}: {exc}") from exc
    values: Dict[str, Any] = overrides.model_dump(exclude_none=True)
    return replace(runtime, **values)


def runtime_settings_from_env(env: Mapping[str, str]) -> RuntimeSettings:
    defaults = RuntimeSettings()
    runtime = RuntimeSettings(
        generation_timeout_s=_get_float_env(env, "FRMGEN_GENERATION_TIMEOUT_S", defaults.generation_timeout_s),
        ping_timeout_s=_get_float_env(env, "FRMGEN_PING_TIMEOUT_S", defaults.ping_timeout_s),
        connect_timeout_s=_get_float_env(env, "FRMGEN_CONNECT_TIMEOUT_S", defaults.connect_timeout_s),
        generation_retries=max(0, _get_int_env(env, "FRMGEN_GENERATION_RETRIES", defaults.generation_retries)),
        generation_backoff_ms=max(0, _get_int_env(env, "FRMGEN_GENERATION_BACKOFF_MS", defaults.generation_backoff_ms)),
        ping_retries=max(0, _get_int_env(env, "FRMGEN_PING_RETRIES", defaults.ping_retries)),
        ping_backoff_ms=max(0, _get_int_env(env, "FRMGEN_PING_BACKOFF_MS", defaults.ping_backoff_ms)),
    )
    return _apply_yaml_overrides(runtime, env.get(PROVIDER_CONFIG_ENV))


def settings_from_env(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from an explicit mapping (defaults to os.environ), uncached."""

    source = os.environ if env is None else env
    return Settings(provider=provider_settings_from_env(source), runtime=runtime_settings_from_env(source))


def load_settings(*, refresh: bool = False) -> Settings:
    """Return process-wide settings, read once from the environment."""

    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if _SETTINGS_CACHE is not None and not refresh:
            return _SETTINGS_CACHE
        _SETTINGS_CACHE = settings_from_env()
        _LOGGER.debug(
            "Loaded settings provider=%s model=%s has_api_key=%s",
            _SETTINGS_CACHE.provider.name,
            _SETTINGS_CACHE.provider.model,
            bool(_SETTINGS_CACHE.provider.api_key),
        )
        return _SETTINGS_CACHE


def reset_settings_cache() -> None:
    """Testing helper to force the next load_settings() to re-read the environment."""

    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "ProviderSettings",
    "RuntimeSettings",
    "Settings",
    "RuntimeOverrides",
    "load_env_files",
    "normalize_provider",
    "settings_from_env",
    "load_settings",
    "reset_settings_cache",
    "OPENAI_CHAT_URL",
    "OPENAI_RESPONSES_URL",
    "GOOGLE_API_BASE",
    "ANTHROPIC_MESSAGES_URL",
]
