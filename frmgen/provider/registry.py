from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from ..config import DEFAULT_PROVIDER, ProviderSettings
from . import ensure_adapters_loaded
from .base import BuildOptions, ChatMessage, ProviderStrategy, RequestDescriptor

__all__ = ["register_strategy", "get_strategy", "list_registered_providers", "build_request"]

_LOGGER = logging.getLogger(__name__)
_STRATEGY_REGISTRY: Dict[str, ProviderStrategy] = {}


def _normalize(name: str) -> str:
    return (name or "").strip().lower()


def register_strategy(*, aliases: Iterable[str], strategy: ProviderStrategy) -> None:
    """Register a provider strategy under one or more provider aliases.

    Strategy modules call this at import time so a new provider only needs a module.
    """

    if not isinstance(strategy, ProviderStrategy):
        raise TypeError("strategy must implement build_request and extract_text")

    alias_list = [_normalize(alias) for alias in aliases if _normalize(alias)]
    if not alias_list:
        raise ValueError("At least one non-empty alias is required")

    for alias in alias_list:
        existing = _STRATEGY_REGISTRY.get(alias)
        if existing is not None and existing is not strategy:
            raise ValueError(f"Alias '{alias}' already registered to a different strategy")
        _STRATEGY_REGISTRY[alias] = strategy


def get_strategy(provider: str) -> ProviderStrategy:
    """Return the strategy for ``provider``; unknown names use the default provider."""

    ensure_adapters_loaded()
    key = _normalize(provider)
    strategy = _STRATEGY_REGISTRY.get(key)
    if strategy is None:
        _LOGGER.debug("No strategy for provider=%r; using %s", provider, DEFAULT_PROVIDER)
        strategy = _STRATEGY_REGISTRY[DEFAULT_PROVIDER]
    return strategy


def list_registered_providers() -> List[str]:
    ensure_adapters_loaded()
    return sorted(_STRATEGY_REGISTRY.keys())


def build_request(
    settings: ProviderSettings,
    model: str,
    messages: List[ChatMessage],
    options: BuildOptions | None = None,
) -> RequestDescriptor:
    """Map (provider, model, messages, options) onto a concrete request descriptor."""

    strategy = get_strategy(settings.name)
    return strategy.build_request(settings, model, messages, options or BuildOptions())
