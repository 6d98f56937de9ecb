"""Entry points that sequence build → send → extract → sanitize → validate.

Each logical call opens its own :class:`~frmgen.events.Tracking` handle and
closes it with exactly one terminal event. Validation of a generated document
is a nested FRM→MCP exchange whose terminal event is always a ``response``
carrying the verdict; only the outer generation exchange reports ``error``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field

from . import validation
from .config import OPENAI_CHAT_URL, ProviderSettings, Settings, load_settings
from .errors import (
    ConfigurationError,
    IncompleteResponseError,
    ParseError,
    ProviderProtocolError,
    SchemaViolationError,
    TransportError,
    TransportErrorKind,
    ValidationGateError,
)
from .events import EventBus, Tracking
from .prompts import build_generation_messages, build_ping_messages
from .provider.base import BuildOptions, ProviderStrategy, RequestDescriptor
from .provider.registry import get_strategy
from .retry import RetryExecutor, RetryNotice, Sleep
from .sanitizer import sanitize
from .telemetry import payload_size, timed
from .transport import Transport
from .validation import DocumentReport, ValidationGate, Validator

_LOGGER = logging.getLogger(__name__)

SOURCE = "FRM"
VALIDATOR_TARGET = "MCP"
PING_FALLBACK_MODEL = "gpt-4o"
_PING_FALLBACK_TRIGGER = "gpt-5-nano"

TransportFactory = Callable[[float], Any]


class PingResult(BaseModel):
    success: bool
    response: str
    model: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    original_model: Optional[str] = None


def _describe_timeout(seconds: float) -> str:
    whole = int(seconds)
    if whole >= 60 and whole % 60 == 0:
        minutes = whole // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{whole} seconds"


def user_facing_error(exc: TransportError, *, timeout_s: float, operation: str = "generation") -> TransportError:
    """Rewrite a terminal transport failure into remediation-specific text.

    Generic failures (including HTTP status errors) are returned unchanged.
    """

    ping = operation == "ping"
    if exc.kind is TransportErrorKind.TIMEOUT:
        if ping:
            message = (
                f"Ping request timed out after {_describe_timeout(timeout_s)}. "
                "Please check your network connection and try again."
            )
        else:
            message = (
                f"Request timed out after {_describe_timeout(timeout_s)}. The AI model may be experiencing "
                "high load. Please try again later."
            )
    elif exc.kind is TransportErrorKind.RESET and not ping:
        message = (
            "The connection was reset by the server. This often happens with very long-running requests. "
            "The request has been automatically retried. If this persists, try reducing the complexity of "
            "the schema or splitting the generation into smaller parts."
        )
    elif exc.is_connection_error:
        subject = "Ping request" if ping else "Schema generation"
        message = (
            f"{subject} failed due to network connection error ({exc.kind.value}). "
            "Please check your network connection and try again."
        )
    else:
        return exc
    return TransportError(message, kind=exc.kind, status_code=exc.status_code, detail=exc.detail or str(exc))


def _error_data(exc: BaseException) -> Dict[str, Any]:
    data: Dict[str, Any] = {"error": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, TransportError):
        data.update(
            kind=exc.kind.value,
            status=exc.status_code,
            is_timeout=exc.kind is TransportErrorKind.TIMEOUT,
            is_connection_error=exc.is_connection_error,
        )
    elif isinstance(exc, IncompleteResponseError):
        data["reason"] = exc.reason
    elif isinstance(exc, ValidationGateError):
        data["validation_errors"] = len(exc.result.errors)
    return data


def _failure_label(exc: BaseException) -> str:
    if isinstance(exc, TransportError):
        return "Request failed"
    if isinstance(exc, IncompleteResponseError):
        return "Response incomplete"
    if isinstance(exc, ProviderProtocolError):
        return "Unusable provider response"
    if isinstance(exc, ParseError):
        return "JSON parse failed"
    if isinstance(exc, ValidationGateError):
        return "Generation completed with validation errors"
    if isinstance(exc, SchemaViolationError):
        return "Generated document rejected"
    return "Generation failed"


class Orchestrator:
    """Generation, ping and validation entry points for one provider configuration."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        bus: Optional[EventBus] = None,
        validator: Optional[Validator] = None,
        transport_factory: Optional[TransportFactory] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or load_settings()
        self.bus = bus or EventBus()
        self.gate = ValidationGate(validator)
        self._transport_factory = transport_factory or self._default_transport
        self._sleep = sleep

    def _default_transport(self, timeout_s: float) -> Transport:
        return Transport(timeout_s=timeout_s, connect_timeout_s=self.settings.runtime.connect_timeout_s)

    @property
    def provider(self) -> ProviderSettings:
        return self.settings.provider

    def _require_key(self, purpose: str, event_message: str) -> None:
        try:
            self.provider.require_api_key(purpose)
        except ConfigurationError as exc:
            self.bus.emit(SOURCE, self.provider.model, "error", event_message, {"error": str(exc)})
            raise

    def _announce_retry(self, tracking: Tracking, notice: RetryNotice) -> None:
        self.bus.info(
            SOURCE,
            tracking.target,
            f"Attempt {notice.attempt}/{notice.max_attempts} failed, retrying in {notice.delay_ms}ms",
            {"kind": notice.error.kind.value, "status": notice.error.status_code, "delay_ms": notice.delay_ms},
            tracking=tracking,
        )

    async def _exchange(
        self,
        build: Callable[[], RequestDescriptor],
        *,
        timeout_s: float,
        retries: int,
        backoff_ms: int,
        tracking: Tracking,
        context: str,
    ) -> Any:
        """Send a freshly built request on each attempt over a transport owned by this call."""

        transport = self._transport_factory(timeout_s)

        def attempt() -> Any:
            request = build()
            _LOGGER.debug("Sending %s request to %s headers=%s", context, request.url, request.redacted()["headers"])
            return transport.send(request)

        executor = RetryExecutor(sleep=self._sleep, on_retry=lambda notice: self._announce_retry(tracking, notice))
        try:
            return await executor.execute(attempt, retries, backoff_ms, context=context)
        finally:
            transport.close()

    async def generate_document(
        self,
        domain: Optional[str] = None,
        scenario_hint: Optional[str] = None,
        *,
        max_output_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Generate one FRM document and return it only if the gate accepts it."""

        provider = self.provider
        model = provider.model
        runtime = self.settings.runtime
        options = {key: value for key, value in (("domain", domain), ("scenario_hint", scenario_hint)) if value}
        self._require_key("AI example generation", "API key not configured")

        strategy = get_strategy(provider.name)
        messages = build_generation_messages(domain, scenario_hint)
        build_options = BuildOptions(max_output_tokens=max_output_tokens)
        _LOGGER.info("Generating FRM document provider=%s model=%s", provider.name, model)

        tracking = self.bus.start_tracking(SOURCE, model, "Generate AI schema", {"options": options, "model": model})
        try:
            with timed("generate_document", {"provider": provider.name, "model": model}):
                payload = await self._exchange(
                    lambda: strategy.build_request(provider, model, messages, build_options),
                    timeout_s=runtime.generation_timeout_s,
                    retries=runtime.generation_retries,
                    backoff_ms=runtime.generation_backoff_ms,
                    tracking=tracking,
                    context="generating document",
                )
                candidate = self._candidate_from_payload(strategy, payload)
                self._gate_candidate(candidate)
        except TransportError as exc:
            self.bus.end_tracking(tracking, _failure_label(exc), _error_data(exc), is_error=True)
            friendly = user_facing_error(exc, timeout_s=runtime.generation_timeout_s)
            if friendly is exc:
                raise
            raise friendly from exc
        except Exception as exc:
            self.bus.end_tracking(tracking, _failure_label(exc), _error_data(exc), is_error=True)
            raise

        self.bus.end_tracking(tracking, "Generation completed successfully", {"data_size": payload_size(candidate)})
        return candidate

    def _candidate_from_payload(self, strategy: ProviderStrategy, payload: Any) -> Dict[str, Any]:
        text = strategy.extract_text(payload)
        if not text or not text.strip():
            raise ProviderProtocolError("Provider response was empty or invalid.")
        candidate = sanitize(text)
        if not isinstance(candidate, dict):
            raise SchemaViolationError(f"Generated document must be a JSON object, got {type(candidate).__name__}")
        return candidate

    def _gate_candidate(self, candidate: Dict[str, Any]) -> validation.ValidationResult:
        tracking = self.bus.start_tracking(
            SOURCE, VALIDATOR_TARGET, "Validate generated data", {"data_size": payload_size(candidate)}
        )
        try:
            result = self.gate.check(candidate)
        except ValidationGateError as exc:
            self.bus.end_tracking(
                tracking,
                "Validation failed",
                {"status": "error", "summary": exc.result.summary, "issues": [i.line() for i in exc.result.errors]},
            )
            raise
        except Exception as exc:
            self.bus.end_tracking(tracking, "Validation could not run", {"status": "error", "error": str(exc)})
            raise
        self.bus.end_tracking(tracking, "Validation successful", {"status": result.status})
        return result

    async def ping_provider(self) -> PingResult:
        provider = self.provider
        model = provider.model
        runtime = self.settings.runtime
        self._require_key("LLM ping", "API key not configured for ping")

        strategy = get_strategy(provider.name)
        tracking = self.bus.start_tracking(SOURCE, model, "Ping LLM", {"model": model})
        try:
            with timed("ping_provider", {"provider": provider.name, "model": model}):
                payload = await self._exchange(
                    lambda: strategy.build_request(provider, model, build_ping_messages(), BuildOptions(ping=True)),
                    timeout_s=runtime.ping_timeout_s,
                    retries=runtime.ping_retries,
                    backoff_ms=runtime.ping_backoff_ms,
                    tracking=tracking,
                    context="pinging provider",
                )
        except TransportError as exc:
            if self._should_fall_back(exc):
                return await self._ping_fallback(tracking, exc)
            self.bus.end_tracking(tracking, "Ping error", _error_data(exc), is_error=True)
            friendly = user_facing_error(exc, timeout_s=runtime.ping_timeout_s, operation="ping")
            if friendly is exc:
                raise
            raise friendly from exc
        except Exception as exc:
            self.bus.end_tracking(tracking, "Ping error", _error_data(exc), is_error=True)
            raise

        text = _ping_text(strategy, payload)
        self.bus.end_tracking(tracking, "Ping successful", {"response": text, "model": model})
        return PingResult(success=True, response=text, model=model)

    def _should_fall_back(self, exc: TransportError) -> bool:
        return (
            self.provider.name == "openai"
            and exc.status_code == 400
            and _PING_FALLBACK_TRIGGER in self.provider.model
        )

    async def _ping_fallback(self, tracking: Tracking, original: TransportError) -> PingResult:
        """Retry a rejected ping once against the known-good chat model."""

        original_model = self.provider.model
        _LOGGER.warning("%s ping rejected (HTTP 400); trying %s", original_model, PING_FALLBACK_MODEL)
        self.bus.info(
            SOURCE,
            PING_FALLBACK_MODEL,
            f"Ping rejected by {original_model}; trying {PING_FALLBACK_MODEL}",
            {"status": original.status_code},
            tracking=tracking,
        )
        strategy = get_strategy("openai")
        fallback_settings = replace(self.provider, api_url=OPENAI_CHAT_URL)
        request = strategy.build_request(
            fallback_settings, PING_FALLBACK_MODEL, build_ping_messages(), BuildOptions(ping=True)
        )
        transport = self._transport_factory(self.settings.runtime.ping_timeout_s)
        try:
            payload = await transport.send(request)
        except Exception as fallback_exc:
            _LOGGER.error("Fallback ping also failed: %s", fallback_exc)
            data = _error_data(original)
            data["fallback_error"] = str(fallback_exc)
            self.bus.end_tracking(tracking, "Ping error", data, is_error=True)
            raise original from fallback_exc
        finally:
            transport.close()

        text = _ping_text(strategy, payload)
        self.bus.end_tracking(
            tracking,
            "Ping successful (fallback)",
            {"response": text, "original_model": original_model},
            target=PING_FALLBACK_MODEL,
        )
        return PingResult(success=True, response=text, model=PING_FALLBACK_MODEL, original_model=original_model)

    def validate_document(self, candidate: Any) -> DocumentReport:
        tracking = self.bus.start_tracking(
            SOURCE, VALIDATOR_TARGET, "Starting schema validation", {"data_size": payload_size(candidate)}
        )
        try:
            report = validation.validate_document(candidate, self.gate.validator)
        except Exception as exc:
            self.bus.end_tracking(tracking, "Schema validation failed", {"error": str(exc)}, is_error=True)
            raise
        self.bus.end_tracking(
            tracking,
            "Schema validation completed",
            {"is_valid": report.is_valid, "errors": len(report.errors), "warnings": len(report.warnings)},
        )
        return report


def _ping_text(strategy: ProviderStrategy, payload: Any) -> str:
    # A ping only proves liveness; an unrecognised body still counts.
    try:
        return strategy.extract_text(payload).strip()
    except ProviderProtocolError as exc:
        _LOGGER.debug("Ping payload carried no text: %s", exc)
        return ""


async def generate_document(
    domain: Optional[str] = None,
    scenario_hint: Optional[str] = None,
    *,
    bus: Optional[EventBus] = None,
) -> Dict[str, Any]:
    return await Orchestrator(bus=bus).generate_document(domain, scenario_hint)


async def ping_provider(*, bus: Optional[EventBus] = None) -> PingResult:
    return await Orchestrator(bus=bus).ping_provider()


def validate_document(candidate: Any, *, bus: Optional[EventBus] = None) -> DocumentReport:
    return Orchestrator(bus=bus).validate_document(candidate)


__all__ = [
    "Orchestrator",
    "PingResult",
    "PING_FALLBACK_MODEL",
    "generate_document",
    "ping_provider",
    "user_facing_error",
    "validate_document",
]
