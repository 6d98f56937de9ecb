from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from .errors import IncompleteResponseError, ProviderProtocolError

_LOGGER = logging.getLogger(__name__)

_INCOMPLETE_FINISH_REASONS = {"incomplete", "length"}
_INCOMPLETE_CANDIDATE_REASONS = {"MAX_TOKENS"}
_INCOMPLETE_STOP_REASONS = {"max_tokens"}


def _incomplete_reason(payload: dict) -> Optional[str]:
    status = payload.get("status")
    if status == "incomplete":
        details = payload.get("incomplete_details")
        if isinstance(details, dict) and details.get("reason"):
            return f"incomplete ({details['reason']})"
        return "incomplete"
    for choice in payload.get("choices") or []:
        if isinstance(choice, dict) and choice.get("finish_reason") in _INCOMPLETE_FINISH_REASONS:
            return str(choice["finish_reason"])
    for candidate in payload.get("candidates") or []:
        if isinstance(candidate, dict) and candidate.get("finishReason") in _INCOMPLETE_CANDIDATE_REASONS:
            return str(candidate["finishReason"])
    if payload.get("stop_reason") in _INCOMPLETE_STOP_REASONS:
        return str(payload["stop_reason"])
    return None


def check_complete(payload: Any) -> None:
    """Raise IncompleteResponseError when the provider flags a truncated generation."""

    if not isinstance(payload, dict):
        return
    reason = _incomplete_reason(payload)
    if reason:
        raise IncompleteResponseError(f"Provider response was incomplete: {reason}", reason=reason)


def _text_from_output_segments(segments: Iterable[Any]) -> Optional[str]:
    for segment in segments:
        if not isinstance(segment, dict):
            continue
        parts = segment.get("content")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if isinstance(part, str):
                return part
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                return part["text"]
    return None


def _join_content_parts(parts: Iterable[Any]) -> str:
    collected: list[str] = []
    for part in parts:
        if isinstance(part, str):
            collected.append(part)
        elif isinstance(part, dict) and isinstance(part.get("text"), str):
            collected.append(part["text"])
    return "".join(collected)


def _text_from_choices(choices: Iterable[Any]) -> Optional[str]:
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        if isinstance(choice.get("text"), str):
            return choice["text"]
        message = choice.get("message") or choice.get("delta") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return _join_content_parts(content)
    return None


def _describe(payload: Any) -> dict:
    if isinstance(payload, dict):
        return {
            "keys": sorted(payload.keys()),
            "text_type": type(payload.get("text")).__name__,
            "output_type": type(payload.get("output")).__name__,
        }
    return {"type": type(payload).__name__}


def extract_text(payload: Any) -> str:
    """Return the generated text from a decoded provider payload.

    Shapes are tried from most to least specific: a flat ``text`` or
    ``output_text`` string, ``output[].content[]`` segments (first text part,
    depth-first), then ``choices[]`` carrying a string or a list of content
    parts (joined in order). Truncation markers are checked first.
    """

    if payload is None or payload == {}:
        raise ProviderProtocolError("Provider responded with an empty payload.")
    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        raise ProviderProtocolError(f"Unexpected provider payload type: {type(payload).__name__}")

    check_complete(payload)

    if isinstance(payload.get("text"), str):
        return payload["text"]
    if isinstance(payload.get("output_text"), str):
        return payload["output_text"]
    if isinstance(payload.get("output"), list):
        text = _text_from_output_segments(payload["output"])
        if text is not None:
            return text
    if isinstance(payload.get("choices"), list):
        text = _text_from_choices(payload["choices"])
        if text is not None:
            return text

    _LOGGER.error("Unable to extract text from provider response: %s", _describe(payload))
    raise ProviderProtocolError("Unable to extract text from provider response.")


__all__ = ["check_complete", "extract_text"]
