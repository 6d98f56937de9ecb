from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..config import ANTHROPIC_MESSAGES_URL, ProviderSettings
from ..errors import ProviderProtocolError
from ..normalizer import check_complete, extract_text
from ..prompts import DEFAULT_SYSTEM_PROMPT
from .base import BuildOptions, ChatMessage, RequestDescriptor, json_headers, system_text
from .registry import register_strategy

ANTHROPIC_VERSION = "2023-06-01"
_MAX_TOKENS = 128_000
_PING_MAX_TOKENS = 10


def _extract_content_text(payload: Dict[str, Any]) -> Optional[str]:
    for block in payload.get("content") or []:
        if isinstance(block, dict) and isinstance(block.get("text"), str):
            return block["text"]
        if isinstance(block, str):
            return block
    return None


class AnthropicStrategy:
    name = "anthropic"

    def build_request(
        self,
        settings: ProviderSettings,
        model: str,
        messages: List[ChatMessage],
        options: BuildOptions,
    ) -> RequestDescriptor:
        api_key = settings.require_api_key()
        # The Messages API takes the system prompt as a top-level field only.
        turns = [m.as_dict() for m in messages if m.role != "system"]
        body: Dict[str, Any] = {
            "model": model,
            "max_tokens": _PING_MAX_TOKENS if options.ping else (options.max_output_tokens or _MAX_TOKENS),
            "messages": turns,
        }
        if not options.ping:
            body["system"] = system_text(messages) or DEFAULT_SYSTEM_PROMPT
        return RequestDescriptor(
            url=settings.api_url or ANTHROPIC_MESSAGES_URL,
            body=body,
            headers=json_headers({"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}),
        )

    def extract_text(self, payload: Any) -> str:
        if isinstance(payload, dict) and isinstance(payload.get("content"), list):
            check_complete(payload)
            text = _extract_content_text(payload)
            if text is None:
                raise ProviderProtocolError("Unable to extract text from Anthropic response.")
            return text
        return extract_text(payload)


STRATEGY = AnthropicStrategy()

register_strategy(aliases=("anthropic", "claude"), strategy=STRATEGY)
