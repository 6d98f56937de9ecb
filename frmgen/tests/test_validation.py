from __future__ import annotations

import pytest

from frmgen.errors import SchemaViolationError, ValidationGateError
from frmgen.validation import (
    JsonSchemaValidator,
    ValidationGate,
    ValidationResult,
    failure_message,
    summarize,
    structural_report,
    validate_document,
)

from frmgen.tests._samples import make_frm_document


class StaticValidator:
    def __init__(self, verdict):
        self.verdict = verdict
        self.seen = []

    def validate(self, candidate):
        self.seen.append(candidate)
        return self.verdict


def test_sample_document_conforms_to_bundled_schema():
    result = JsonSchemaValidator().validate(make_frm_document())
    assert result.ok, [issue.line() for issue in result.errors]
    assert result.summary == "Document conforms to the FRM schema."


def test_missing_section_reported_at_its_path():
    doc = make_frm_document()
    del doc["input"]
    result = JsonSchemaValidator().validate(doc)
    assert result.status == "error"
    assert "/input is required" in [issue.line() for issue in result.errors]
    assert result.summary == summarize(len(result.errors))


def test_extra_properties_rejected():
    doc = make_frm_document()
    doc["modeling"]["chat_transcript"] = "..."
    result = JsonSchemaValidator().validate(doc)
    assert any(issue.instance_path == "/modeling" and issue.keyword == "additionalProperties" for issue in result.errors)


def test_gate_message_lists_at_most_eight_issues():
    errors = [{"instancePath": f"/input/unknowns/{i}", "message": "must be object"} for i in range(12)]
    gate = ValidationGate(StaticValidator({"status": "error", "errors": errors, "summary": "12 schema issues detected."}))

    with pytest.raises(ValidationGateError) as info:
        gate.check(make_frm_document())

    message = str(info.value)
    assert message.startswith("FRM MCP validation failed: 12 schema issues detected.")
    assert "8. /input/unknowns/7 must be object" in message
    assert "/input/unknowns/8 " not in message
    assert "... and 4 more issue(s)" in message
    assert len(info.value.result.errors) == 12


def test_root_issue_uses_slash():
    result = ValidationResult.model_validate(
        {"status": "error", "errors": [{"instancePath": "", "message": "must be object"}], "summary": "1 issue"}
    )
    assert "1. / must be object" in failure_message(result)


def test_false_gate_flag_rejects_even_when_validator_passes():
    doc = make_frm_document()
    doc["novelty_assurance"]["redundancy_check"]["gate_pass"] = False
    gate = ValidationGate(StaticValidator(ValidationResult(status="ok", summary="fine")))

    with pytest.raises(ValidationGateError) as info:
        gate.check(doc)
    assert "/novelty_assurance/redundancy_check/gate_pass self-reported gate did not pass" in str(info.value)


def test_absent_gate_flags_do_not_reject():
    doc = make_frm_document()
    del doc["novelty_assurance"]["redundancy_check"]["gate_pass"]
    gate = ValidationGate(StaticValidator(ValidationResult(status="ok", summary="fine")))
    assert gate.check(doc).ok


def test_non_object_candidate_is_structural_violation():
    validator = StaticValidator(ValidationResult(status="ok"))
    with pytest.raises(SchemaViolationError):
        ValidationGate(validator).check(["not", "a", "document"])
    assert validator.seen == []


def test_structural_report_for_valid_document():
    report = validate_document(make_frm_document())
    assert report.is_valid
    assert report.errors == []
    assert report.warnings == []


def test_structural_report_flags_problems():
    doc = make_frm_document()
    doc["surprise"] = {}
    del doc["metadata"]["version"]
    doc["validation"]["unit_consistency_check"] = "yes"
    doc["novelty_assurance"]["citations"] = doc["novelty_assurance"]["citations"][:2]
    del doc["validation"]["novelty_gate_pass"]

    report = structural_report(doc)

    assert not report.is_valid
    assert "Unexpected top-level section: surprise" in report.errors
    assert "metadata.version is required" in report.errors
    assert "validation.unit_consistency_check must be a boolean" in report.errors
    assert "novelty_assurance.citations must list at least 3 entries" in report.errors
    assert report.warnings == ["validation.novelty_gate_pass is not reported"]


def test_validate_document_merges_validator_issues():
    validator = StaticValidator({"status": "error", "errors": [{"instancePath": "/modeling", "message": "looks off"}]})
    report = validate_document(make_frm_document(), validator)
    assert not report.is_valid
    assert report.errors == ["/modeling looks off"]


def test_validate_document_rejects_non_objects():
    report = validate_document("just text")
    assert not report.is_valid
    assert report.errors == ["Document must be a JSON object"]


def test_summary_pluralizes_issue_count():
    assert summarize(0) == "Document conforms to the FRM schema."
    assert summarize(1) == "1 schema issue detected."
    assert summarize(3) == "3 schema issues detected."


def test_missing_section_is_reported_once():
    doc = make_frm_document()
    del doc["input"]

    report = validate_document(doc)

    assert "Missing required section: input" in report.errors
    assert "/input is required" not in report.errors


def test_validator_issue_on_a_structurally_flagged_path_is_dropped():
    doc = make_frm_document()
    del doc["metadata"]["version"]
    validator = StaticValidator(
        {
            "status": "error",
            "errors": [
                {"instancePath": "/metadata/version", "message": "is required"},
                {"instancePath": "/modeling", "message": "looks off"},
            ],
        }
    )

    report = validate_document(doc, validator)

    assert report.errors == ["metadata.version is required", "/modeling looks off"]
