from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from ..config import GOOGLE_API_BASE, ProviderSettings
from ..errors import ProviderProtocolError
from ..normalizer import check_complete, extract_text
from .base import BuildOptions, ChatMessage, RequestDescriptor, json_headers, system_text, user_text
from .registry import register_strategy

_MAX_OUTPUT_TOKENS = 128_000
_PING_MAX_OUTPUT_TOKENS = 10
_TEMPERATURE = 0.7


def _api_base(settings: ProviderSettings) -> str:
    base = (settings.api_url or GOOGLE_API_BASE).rstrip("/")
    if base.endswith("/models"):
        base = base[: -len("/models")]
    return base


def _extract_candidate_text(payload: Dict[str, Any]) -> Optional[str]:
    candidates = payload.get("candidates") or []
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content")
        parts: Iterable[Any]
        if isinstance(content, dict):
            parts = content.get("parts", []) or []
        elif isinstance(content, list):
            parts = content
        else:
            parts = []
        for part in parts:
            if isinstance(part, dict):
                text_val = part.get("text")
                if isinstance(text_val, str):
                    return text_val
        # Some variants return `candidate["text"]`
        text_val = candidate.get("text")
        if isinstance(text_val, str):
            return text_val
    return None


class GeminiStrategy:
    name = "google"

    def build_request(
        self,
        settings: ProviderSettings,
        model: str,
        messages: List[ChatMessage],
        options: BuildOptions,
    ) -> RequestDescriptor:
        api_key = settings.require_api_key()
        system = system_text(messages)
        user = user_text(messages)
        generation_config: Dict[str, Any] = {
            "temperature": _TEMPERATURE,
            "maxOutputTokens": _PING_MAX_OUTPUT_TOKENS if options.ping else (options.max_output_tokens or _MAX_OUTPUT_TOKENS),
        }
        if not options.ping:
            generation_config["responseMimeType"] = "application/json"
        body = {
            "contents": [{"parts": [{"text": f"{system}\n\n{user}" if system else user}]}],
            "generationConfig": generation_config,
        }
        return RequestDescriptor(
            url=f"{_api_base(settings)}/models/{model}:generateContent",
            body=body,
            headers=json_headers({"x-goog-api-key": api_key}),
        )

    def extract_text(self, payload: Any) -> str:
        if isinstance(payload, dict) and "candidates" in payload:
            check_complete(payload)
            text = _extract_candidate_text(payload)
            if text is None:
                raise ProviderProtocolError("Unable to extract text from Gemini response.")
            return text
        return extract_text(payload)


STRATEGY = GeminiStrategy()

register_strategy(aliases=("google", "gemini", "google:gemini"), strategy=STRATEGY)
