from __future__ import annotations

from functools import lru_cache
from importlib import resources
from typing import List, Optional

from ..provider.base import ChatMessage

__all__ = [
    "PromptTemplateError",
    "DEFAULT_SYSTEM_PROMPT",
    "PING_PROMPT",
    "build_user_prompt",
    "build_generation_messages",
    "build_ping_messages",
]

PING_PROMPT = 'Ping - respond with "OK" to confirm connection.'
_ROTATE_DOMAINS = (
    "Select an appropriate domain such as medicine, biology, public_health, chemistry, "
    "engineering, economics, or general, but rotate domains across runs."
)


class PromptTemplateError(RuntimeError):
    """Raised when a requested prompt resource cannot be located."""


@lru_cache(maxsize=None)
def _load_text(relative_path: str) -> str:
    """Read and cache prompt text from the package resources."""

    base = resources.files("frmgen.prompts")
    target = base.joinpath(relative_path)
    if not target.is_file():
        raise PromptTemplateError(f"Missing prompt template: {relative_path}")
    return target.read_text(encoding="utf-8").strip()


DEFAULT_SYSTEM_PROMPT = _load_text("frm/system_v1.md")


def build_user_prompt(domain: Optional[str] = None, scenario_hint: Optional[str] = None) -> str:
    lines = [f"Focus on the {domain} domain." if domain else _ROTATE_DOMAINS]
    if scenario_hint:
        lines.append(f"Incorporate this scenario guidance: {scenario_hint}.")
    return "\n".join(lines)


def build_generation_messages(
    domain: Optional[str] = None,
    scenario_hint: Optional[str] = None,
    *,
    system_prompt: Optional[str] = None,
) -> List[ChatMessage]:
    return [
        ChatMessage(role="system", content=system_prompt or DEFAULT_SYSTEM_PROMPT),
        ChatMessage(role="user", content=build_user_prompt(domain, scenario_hint)),
    ]


def build_ping_messages() -> List[ChatMessage]:
    return [ChatMessage(role="user", content=PING_PROMPT)]
