from __future__ import annotations

import asyncio
import json
import logging

import pytest

from frmgen.config import RuntimeSettings
from frmgen.errors import (
    ConfigurationError,
    IncompleteResponseError,
    ParseError,
    TransportError,
    TransportErrorKind,
    ValidationGateError,
)
from frmgen.events import EventBus, EventRecorder
from frmgen.orchestrator import Orchestrator
from frmgen.sanitizer import TOP_LEVEL_SECTIONS
from frmgen.validation import ValidationResult

from frmgen.tests._fakes import FakeTransport, SleepRecorder, make_settings, transport_factory
from frmgen.tests._samples import chat_payload, chat_payload_for, make_frm_document

FAST_RUNTIME = RuntimeSettings(generation_backoff_ms=10, ping_backoff_ms=5)


class StaticValidator:
    def __init__(self, verdict):
        self.verdict = verdict

    def validate(self, candidate):
        return self.verdict


def _reset() -> TransportError:
    return TransportError("connection reset", kind=TransportErrorKind.RESET)


def _orchestrator(*transports: FakeTransport, validator=None, settings=None):
    recorder = EventRecorder()
    sleep = SleepRecorder()
    factory = transport_factory(*transports)
    orchestrator = Orchestrator(
        settings or make_settings(runtime=FAST_RUNTIME),
        bus=EventBus(recorder),
        validator=validator,
        transport_factory=factory,
        sleep=sleep,
    )
    return orchestrator, recorder, sleep, factory


def test_generate_prunes_unknown_top_level_keys():
    doc = make_frm_document()
    doc["foo_extra"] = 1
    transport = FakeTransport([chat_payload(json.dumps(doc))])
    orchestrator, recorder, _, factory = _orchestrator(transport)

    result = asyncio.run(orchestrator.generate_document("public_health"))

    assert set(result) == set(TOP_LEVEL_SECTIONS)
    assert "foo_extra" not in result
    assert transport.closed
    assert factory.timeouts == [2700.0]
    assert [e.type for e in recorder.events] == ["request", "request", "response", "response"]
    final = recorder.events[-1]
    assert final.message == "Generation completed successfully"
    assert final.target == "gpt-5-2025-08-07"


def test_rejection_reports_path_and_emits_one_error_event():
    verdict = {"status": "error", "errors": [{"instancePath": "/input", "message": "is required"}], "summary": "1 schema issue detected."}
    transport = FakeTransport([chat_payload_for(make_frm_document())])
    orchestrator, recorder, _, _ = _orchestrator(transport, validator=StaticValidator(verdict))

    with pytest.raises(ValidationGateError) as info:
        asyncio.run(orchestrator.generate_document())

    assert "/input is required" in str(info.value)
    errors = recorder.of_type("error")
    assert len(errors) == 1
    assert errors[0].duration is not None and errors[0].duration >= 0
    assert errors[0].message == "Generation completed with validation errors"
    mcp = [e for e in recorder.events if e.target == "MCP" and e.type == "response"]
    assert mcp and mcp[0].data["status"] == "error"


def test_three_resets_then_success(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.WARNING, logger="frmgen.retry")
    transport = FakeTransport([_reset(), _reset(), _reset(), chat_payload_for(make_frm_document())])
    orchestrator, recorder, sleep, _ = _orchestrator(transport)

    result = asyncio.run(orchestrator.generate_document())

    assert set(result) == set(TOP_LEVEL_SECTIONS)
    assert len(transport.sent) == 4
    assert len({id(request) for request in transport.sent}) == 4
    assert all(request == transport.sent[0] for request in transport.sent)
    assert sleep.delays == [0.01, 0.02, 0.04]
    backoff_logs = [r for r in caplog.records if "retrying in" in r.getMessage()]
    assert len(backoff_logs) == 3
    assert len(recorder.of_type("info")) == 3
    assert recorder.of_type("error") == []


def test_exhausted_resets_surface_reset_advice():
    settings = make_settings(runtime=RuntimeSettings(generation_retries=1, generation_backoff_ms=1))
    transport = FakeTransport([_reset(), _reset()])
    orchestrator, recorder, _, _ = _orchestrator(transport, settings=settings)

    with pytest.raises(TransportError) as info:
        asyncio.run(orchestrator.generate_document())

    assert "connection was reset by the server" in str(info.value)
    assert "reducing the complexity" in str(info.value)
    assert info.value.kind is TransportErrorKind.RESET
    assert len(recorder.of_type("error")) == 1


def test_timeout_message_mentions_configured_duration():
    settings = make_settings(runtime=RuntimeSettings(generation_retries=0))
    transport = FakeTransport([TransportError("read timed out", kind=TransportErrorKind.TIMEOUT)])
    orchestrator, _, _, _ = _orchestrator(transport, settings=settings)

    with pytest.raises(TransportError, match="timed out after 45 minutes"):
        asyncio.run(orchestrator.generate_document())


def test_refused_connection_advises_checking_network():
    settings = make_settings(runtime=RuntimeSettings(generation_retries=0))
    transport = FakeTransport([TransportError("refused", kind=TransportErrorKind.REFUSED)])
    orchestrator, _, _, _ = _orchestrator(transport, settings=settings)

    with pytest.raises(TransportError, match=r"network connection error \(refused\)"):
        asyncio.run(orchestrator.generate_document())


def test_unauthorized_is_not_retried():
    transport = FakeTransport([TransportError("Provider request failed (HTTP 401): bad key", status_code=401)])
    orchestrator, recorder, sleep, _ = _orchestrator(transport)

    with pytest.raises(TransportError, match="HTTP 401"):
        asyncio.run(orchestrator.generate_document())

    assert len(transport.sent) == 1
    assert sleep.delays == []
    assert recorder.of_type("error")[0].data["status"] == 401


def test_missing_api_key_emits_error_without_request():
    orchestrator, recorder, _, factory = _orchestrator(settings=make_settings(api_key=None))

    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY is not set"):
        asyncio.run(orchestrator.generate_document())

    assert [e.type for e in recorder.events] == ["error"]
    assert recorder.events[0].duration is None
    assert factory.timeouts == []


def test_incomplete_response_is_not_parsed():
    payload = chat_payload('{"metadata": {', finish_reason="length")
    orchestrator, recorder, _, _ = _orchestrator(FakeTransport([payload]))

    with pytest.raises(IncompleteResponseError):
        asyncio.run(orchestrator.generate_document())
    assert recorder.of_type("error")[0].message == "Response incomplete"


def test_garbled_output_is_parse_error():
    orchestrator, recorder, _, _ = _orchestrator(FakeTransport([chat_payload("I cannot help with that.")]))

    with pytest.raises(ParseError) as info:
        asyncio.run(orchestrator.generate_document())
    assert info.value.excerpt == "I cannot help with that."
    assert recorder.of_type("error")[0].message == "JSON parse failed"


def test_self_reported_gate_failure_rejects():
    doc = make_frm_document()
    doc["validation"]["novelty_gate_pass"] = False
    orchestrator, _, _, _ = _orchestrator(
        FakeTransport([chat_payload_for(doc)]), validator=StaticValidator(ValidationResult(status="ok"))
    )

    with pytest.raises(ValidationGateError, match="/validation/novelty_gate_pass"):
        asyncio.run(orchestrator.generate_document())


def test_concurrent_generations_keep_separate_tracking():
    first = FakeTransport([chat_payload_for(make_frm_document())])
    second = FakeTransport([chat_payload_for(make_frm_document())])
    orchestrator, recorder, _, _ = _orchestrator(first, second)

    async def run_both():
        return await asyncio.gather(orchestrator.generate_document("physics"), orchestrator.generate_document("biology"))

    results = asyncio.run(run_both())

    assert len(results) == 2
    requests = [e for e in recorder.of_type("request") if e.message == "Generate AI schema"]
    finals = [e for e in recorder.of_type("response") if e.message == "Generation completed successfully"]
    assert {e.correlation_id for e in requests} == {e.correlation_id for e in finals}
    assert len({e.correlation_id for e in finals}) == 2


def test_ping_success():
    transport = FakeTransport([chat_payload(" OK ")])
    orchestrator, recorder, _, factory = _orchestrator(transport)

    result = asyncio.run(orchestrator.ping_provider())

    assert result.success and result.response == "OK"
    assert result.model == "gpt-5-2025-08-07"
    assert factory.timeouts == [30.0]
    assert transport.sent[0].body["max_tokens"] == 10
    assert [e.message for e in recorder.events] == ["Ping LLM", "Ping successful"]


def test_ping_nano_falls_back_to_gpt4o():
    settings = make_settings(model="gpt-5-nano", runtime=FAST_RUNTIME)
    rejected = FakeTransport([TransportError("Provider request failed (HTTP 400): unsupported", status_code=400)] * 4)
    fallback = FakeTransport([chat_payload("OK")])
    orchestrator, recorder, _, _ = _orchestrator(rejected, fallback, settings=settings)

    result = asyncio.run(orchestrator.ping_provider())

    assert result.model == "gpt-4o"
    assert result.original_model == "gpt-5-nano"
    assert len(fallback.sent) == 1
    assert fallback.sent[0].url == "https://api.openai.com/v1/chat/completions"
    assert fallback.sent[0].body["model"] == "gpt-4o"
    terminal = [e for e in recorder.events if e.type in ("response", "error")]
    assert len(terminal) == 1
    assert terminal[0].message == "Ping successful (fallback)"
    assert terminal[0].target == "gpt-4o"


def test_ping_timeout_message():
    settings = make_settings(runtime=RuntimeSettings(ping_retries=0))
    orchestrator, recorder, _, _ = _orchestrator(
        FakeTransport([TransportError("timed out", kind=TransportErrorKind.TIMEOUT)]), settings=settings
    )

    with pytest.raises(TransportError, match="Ping request timed out after 30 seconds"):
        asyncio.run(orchestrator.ping_provider())
    assert recorder.of_type("error")[0].message == "Ping error"


def test_ping_without_key():
    orchestrator, recorder, _, _ = _orchestrator(settings=make_settings(api_key=None))
    with pytest.raises(ConfigurationError, match="enable LLM ping"):
        asyncio.run(orchestrator.ping_provider())
    assert recorder.events[0].message == "API key not configured for ping"


def test_validate_document_tracks_mcp_exchange():
    orchestrator, recorder, _, _ = _orchestrator()

    report = orchestrator.validate_document(make_frm_document())

    assert report.is_valid
    assert [(e.type, e.target) for e in recorder.events] == [("request", "MCP"), ("response", "MCP")]
    assert recorder.events[-1].data == {"is_valid": True, "errors": 0, "warnings": 0}
