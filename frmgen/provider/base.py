from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Protocol, runtime_checkable

from ..config import ProviderSettings
from ..telemetry import redact_headers

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class RequestDescriptor:
    """Wire-level request for one provider call; built fresh per call."""

    url: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(repr=False, default_factory=dict)

    def redacted(self) -> Dict[str, Any]:
        return {"url": self.url, "body": self.body, "headers": redact_headers(self.headers)}


@dataclass(frozen=True)
class BuildOptions:
    """Per-call knobs accepted by ``build_request``."""

    max_output_tokens: Optional[int] = None
    ping: bool = False


def system_text(messages: List[ChatMessage]) -> str:
    return next((m.content for m in messages if m.role == "system"), "")


def user_text(messages: List[ChatMessage]) -> str:
    return next((m.content for m in messages if m.role == "user"), "")


@runtime_checkable
class ProviderStrategy(Protocol):
    """One entry of the provider strategy table."""

    name: str

    def build_request(
        self,
        settings: ProviderSettings,
        model: str,
        messages: List[ChatMessage],
        options: BuildOptions,
    ) -> RequestDescriptor:  # pragma: no cover - Protocol stub
        ...

    def extract_text(self, payload: Any) -> str:  # pragma: no cover - Protocol stub
        ...


def json_headers(extra: Mapping[str, str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    headers.update(extra)
    return headers


__all__ = [
    "BuildOptions",
    "ChatMessage",
    "ProviderStrategy",
    "RequestDescriptor",
    "json_headers",
    "system_text",
    "user_text",
]
