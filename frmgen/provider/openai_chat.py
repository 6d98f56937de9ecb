from __future__ import annotations

from typing import Any, Dict, List

from ..config import OPENAI_CHAT_URL, OPENAI_RESPONSES_URL, ProviderSettings
from ..normalizer import extract_text
from .base import BuildOptions, ChatMessage, RequestDescriptor, json_headers
from .registry import register_strategy

_CHAT_MAX_COMPLETION_TOKENS = 128_000
_RESPONSES_MAX_OUTPUT_TOKENS = 272_000
_PING_CHAT_MAX_TOKENS = 10
_PING_RESPONSES_MAX_OUTPUT_TOKENS = 200  # responses endpoint rejects limits below 16


def uses_responses_endpoint(model: str) -> bool:
    return "gpt-5-pro" in (model or "")


def resolve_url(settings: ProviderSettings, model: str) -> str:
    """Model family decides the endpoint; the URL override only applies outside gpt-5."""

    if uses_responses_endpoint(model):
        return OPENAI_RESPONSES_URL
    if "gpt-5" in (model or ""):
        return OPENAI_CHAT_URL
    return settings.api_url or OPENAI_CHAT_URL


class OpenAIStrategy:
    name = "openai"

    def build_request(
        self,
        settings: ProviderSettings,
        model: str,
        messages: List[ChatMessage],
        options: BuildOptions,
    ) -> RequestDescriptor:
        api_key = settings.require_api_key()
        wire_messages = [m.as_dict() for m in messages]
        body: Dict[str, Any]
        if uses_responses_endpoint(model):
            if options.ping:
                body = {"model": model, "input": wire_messages, "max_output_tokens": _PING_RESPONSES_MAX_OUTPUT_TOKENS}
            else:
                body = {
                    "model": model,
                    "input": wire_messages,
                    "max_output_tokens": options.max_output_tokens or _RESPONSES_MAX_OUTPUT_TOKENS,
                    "text": {"format": {"type": "json_object"}},
                }
        elif options.ping:
            body = {"model": model, "messages": wire_messages, "max_tokens": _PING_CHAT_MAX_TOKENS}
        else:
            body = {
                "model": model,
                "messages": wire_messages,
                "max_completion_tokens": options.max_output_tokens or _CHAT_MAX_COMPLETION_TOKENS,
                "response_format": {"type": "json_object"},
            }
        return RequestDescriptor(
            url=resolve_url(settings, model),
            body=body,
            headers=json_headers({"Authorization": f"Bearer {api_key}"}),
        )

    def extract_text(self, payload: Any) -> str:
        return extract_text(payload)


STRATEGY = OpenAIStrategy()

register_strategy(aliases=("openai", "gpt", "openai:gpt-5"), strategy=STRATEGY)
