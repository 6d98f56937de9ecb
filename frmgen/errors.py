from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .validation import ValidationResult

__all__ = [
    "FrmError",
    "ConfigurationError",
    "TransportErrorKind",
    "TransportError",
    "ProviderProtocolError",
    "IncompleteResponseError",
    "ParseError",
    "SchemaViolationError",
    "ValidationGateError",
    "NON_RETRYABLE_STATUS_CODES",
    "excerpt",
]

NON_RETRYABLE_STATUS_CODES = frozenset({401, 403, 404})
_EXCERPT_CHARS = 120


class FrmError(RuntimeError):
    """Base error for the generation pipeline."""


class ConfigurationError(FrmError):
    """A required setting (usually an API key) is missing."""


class TransportErrorKind(str, Enum):
    TIMEOUT = "timeout"
    RESET = "reset"
    REFUSED = "refused"
    DNS = "dns"
    GENERIC = "generic"


class TransportError(FrmError):
    """Failure of a single HTTP exchange, tagged at the transport boundary."""

    def __init__(
        self,
        message: str,
        *,
        kind: TransportErrorKind = TransportErrorKind.GENERIC,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = TransportErrorKind(kind)
        self.status_code = status_code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.status_code not in NON_RETRYABLE_STATUS_CODES

    @property
    def is_connection_error(self) -> bool:
        return self.kind in (TransportErrorKind.RESET, TransportErrorKind.REFUSED, TransportErrorKind.DNS)


class ProviderProtocolError(FrmError):
    """The provider answered with a payload we cannot use."""


class IncompleteResponseError(ProviderProtocolError):
    """The provider reported that generation stopped before finishing."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class ParseError(FrmError):
    """Generated text is not valid JSON after fence stripping."""

    def __init__(self, message: str, *, text: str) -> None:
        self.excerpt = excerpt(text)
        super().__init__(f"{message}: {self.excerpt}")


class SchemaViolationError(FrmError):
    """Structural problem detected before the external validator runs."""


class ValidationGateError(FrmError):
    """The validator (or a self-reported gate flag) rejected the candidate."""

    def __init__(self, message: str, *, result: "ValidationResult") -> None:
        super().__init__(message)
        self.result = result


def excerpt(text: str, limit: int = _EXCERPT_CHARS) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
