"""Validation Gate and the bundled JSON-Schema validator.

The gate treats the validator as a black box that returns a
:class:`ValidationResult`. Self-reported gate flags inside the candidate are
folded into that verdict: a flag that is present and false rejects the
document even when the validator itself reports ``ok``.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from importlib import resources
from typing import Any, Dict, Iterable, List, Literal, Optional, Protocol, Tuple, runtime_checkable

from jsonschema import Draft7Validator
from pydantic import BaseModel, ConfigDict, Field

from .errors import SchemaViolationError, ValidationGateError
from .sanitizer import TOP_LEVEL_SECTIONS

_LOGGER = logging.getLogger(__name__)

MAX_LISTED_ISSUES = 8
GATE_FAILURE_PREFIX = "FRM MCP validation failed"

GATE_FLAGS: Tuple[Tuple[str, ...], ...] = (
    ("validation", "novelty_gate_pass"),
    ("novelty_assurance", "redundancy_check", "gate_pass"),
)

_REQUIRED_KEYS: Dict[str, Tuple[str, ...]] = {
    "metadata": ("problem_id", "domain", "version"),
    "input": ("problem_summary", "scope_objective", "mechanistic_notes", "unknowns", "constraints_goals"),
    "modeling": ("model_class", "variables", "equations"),
    "method_selection": ("problem_type", "chosen_methods"),
    "solution_and_analysis": ("solution_requests",),
    "validation": (
        "unit_consistency_check",
        "mechanism_coverage_check",
        "novelty_gate_pass",
        "constraint_satisfaction_metrics",
        "fit_quality_metrics",
        "counterfactual_sanity",
    ),
    "output_contract": ("sections_required", "formatting", "safety_note"),
    "novelty_assurance": (
        "prior_work",
        "citations",
        "citation_checks",
        "similarity_assessment",
        "novelty_claims",
        "redundancy_check",
        "evidence_tracking",
        "error_handling",
    ),
}
_VALIDATION_BOOLEANS = ("unit_consistency_check", "mechanism_coverage_check", "novelty_gate_pass")
_MIN_CITATIONS = 3


class ValidationIssue(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_path: str = Field(default="/", alias="instancePath")
    message: str
    keyword: Optional[str] = None
    schema_path: Optional[str] = None

    def line(self) -> str:
        return f"{self.instance_path or '/'} {self.message}"


class ValidationResult(BaseModel):
    """Verdict returned by a validator for one candidate."""

    status: Literal["ok", "error"]
    errors: List[ValidationIssue] = Field(default_factory=list)
    summary: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class DocumentReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


@runtime_checkable
class Validator(Protocol):
    """External validator collaborator consumed by the gate."""

    def validate(self, candidate: Any) -> ValidationResult:  # pragma: no cover - Protocol stub
        ...


@lru_cache(maxsize=1)
def load_frm_schema() -> Dict[str, Any]:
    """Read the bundled draft-07 FRM schema from package resources."""

    text = resources.files("frmgen.schema").joinpath("frm_schema.json").read_text(encoding="utf-8")
    return json.loads(text)


def _pointer(path: Iterable[Any]) -> str:
    parts = [str(part) for part in path]
    return "/" + "/".join(parts) if parts else "/"


def summarize(issue_count: int) -> str:
    if issue_count == 0:
        return "Document conforms to the FRM schema."
    noun = "issue" if issue_count == 1 else "issues"
    return f"{issue_count} schema {noun} detected."


class JsonSchemaValidator:
    """Default validator backed by ``jsonschema`` and the bundled FRM schema."""

    def __init__(self, schema: Optional[Dict[str, Any]] = None) -> None:
        self._schema = schema if schema is not None else load_frm_schema()
        Draft7Validator.check_schema(self._schema)
        self._validator = Draft7Validator(self._schema)

    def validate(self, candidate: Any) -> ValidationResult:
        issues: List[ValidationIssue] = []
        seen: set[Tuple[str, str]] = set()
        for error in sorted(self._validator.iter_errors(candidate), key=lambda e: [str(p) for p in e.absolute_path]):
            base = _pointer(error.absolute_path)
            schema_path = _pointer(error.absolute_schema_path)
            if error.validator == "required" and isinstance(error.instance, dict):
                # One issue per missing property, addressed at the property itself.
                for name in error.validator_value:
                    if name in error.instance:
                        continue
                    path = base.rstrip("/") + "/" + str(name)
                    if (path, "required") in seen:
                        continue
                    seen.add((path, "required"))
                    issues.append(
                        ValidationIssue(
                            instance_path=path, message="is required", keyword="required", schema_path=schema_path
                        )
                    )
                continue
            key = (base, error.message)
            if key in seen:
                continue
            seen.add(key)
            issues.append(
                ValidationIssue(
                    instance_path=base, message=error.message, keyword=str(error.validator), schema_path=schema_path
                )
            )
        return ValidationResult(
            status="error" if issues else "ok",
            errors=issues,
            summary=summarize(len(issues)),
        )


def _lookup(document: Any, path: Tuple[str, ...]) -> Tuple[bool, Any]:
    current = document
    for key in path:
        if not isinstance(current, dict) or key not in current:
            return False, None
        current = current[key]
    return True, current


def gate_flag_issues(candidate: Any) -> List[ValidationIssue]:
    """Issues for self-reported gate flags that are present and false."""

    issues: List[ValidationIssue] = []
    for path in GATE_FLAGS:
        present, value = _lookup(candidate, path)
        if present and value is False:
            issues.append(
                ValidationIssue(
                    instance_path=_pointer(path),
                    message="self-reported gate did not pass",
                    keyword="gate_pass",
                )
            )
    return issues


def failure_message(result: ValidationResult, max_listed: int = MAX_LISTED_ISSUES) -> str:
    lines = [f"{GATE_FAILURE_PREFIX}: {result.summary}"]
    for index, issue in enumerate(result.errors[:max_listed], start=1):
        lines.append(f"{index}. {issue.line()}")
    remaining = len(result.errors) - max_listed
    if remaining > 0:
        lines.append(f"... and {remaining} more issue(s)")
    return "\n".join(lines)


class ValidationGate:
    """Turns a validator verdict plus embedded gate flags into accept/reject."""

    def __init__(self, validator: Optional[Validator] = None, *, max_listed: int = MAX_LISTED_ISSUES) -> None:
        self.validator: Validator = validator if validator is not None else JsonSchemaValidator()
        self.max_listed = max_listed

    def evaluate(self, candidate: Any) -> ValidationResult:
        if not isinstance(candidate, dict):
            raise SchemaViolationError(
                f"Generated document must be a JSON object, got {type(candidate).__name__}"
            )
        verdict = self.validator.validate(candidate)
        if not isinstance(verdict, ValidationResult):
            verdict = ValidationResult.model_validate(verdict)
        flagged = gate_flag_issues(candidate)
        known = {(issue.instance_path, issue.message) for issue in verdict.errors}
        extra = [issue for issue in flagged if (issue.instance_path, issue.message) not in known]
        if not extra:
            return verdict
        errors = list(verdict.errors) + extra
        summary = verdict.summary if not verdict.ok else summarize(len(errors))
        return ValidationResult(status="error", errors=errors, summary=summary)

    def check(self, candidate: Any) -> ValidationResult:
        """Return the verdict when accepted; raise ValidationGateError otherwise."""

        result = self.evaluate(candidate)
        if result.ok:
            return result
        _LOGGER.warning("Validation gate rejected candidate: %s", result.summary)
        raise ValidationGateError(failure_message(result, self.max_listed), result=result)


def _structural_findings(candidate: Dict[str, Any]) -> Tuple[List[Tuple[str, str]], List[str]]:
    """Structural errors paired with the JSON pointer each one is about, plus warnings."""

    errors: List[Tuple[str, str]] = []
    warnings: List[str] = []
    for section in TOP_LEVEL_SECTIONS:
        if section not in candidate:
            errors.append((_pointer((section,)), f"Missing required section: {section}"))
        elif not isinstance(candidate[section], dict):
            errors.append((_pointer((section,)), f"Section {section} must be an object"))
    for extra in sorted(set(candidate) - set(TOP_LEVEL_SECTIONS)):
        errors.append((_pointer((extra,)), f"Unexpected top-level section: {extra}"))

    for section, keys in _REQUIRED_KEYS.items():
        body = candidate.get(section)
        if not isinstance(body, dict):
            continue
        for key in keys:
            if key not in body:
                errors.append((_pointer((section, key)), f"{section}.{key} is required"))

    validation = candidate.get("validation")
    if isinstance(validation, dict):
        for key in _VALIDATION_BOOLEANS:
            if key in validation and not isinstance(validation[key], bool):
                errors.append((_pointer(("validation", key)), f"validation.{key} must be a boolean"))

    assurance = candidate.get("novelty_assurance")
    if isinstance(assurance, dict):
        citations = assurance.get("citations")
        if isinstance(citations, list) and len(citations) < _MIN_CITATIONS:
            errors.append(
                (
                    _pointer(("novelty_assurance", "citations")),
                    f"novelty_assurance.citations must list at least {_MIN_CITATIONS} entries",
                )
            )

    for path in GATE_FLAGS:
        present, value = _lookup(candidate, path)
        dotted = ".".join(path)
        if not present:
            warnings.append(f"{dotted} is not reported")
        elif value is not True:
            errors.append((_pointer(path), f"{dotted} must be true"))

    return errors, warnings


def structural_report(candidate: Any) -> DocumentReport:
    """Cheap structural checks run before the external validator."""

    if not isinstance(candidate, dict):
        return DocumentReport(is_valid=False, errors=["Document must be a JSON object"])
    findings, warnings = _structural_findings(candidate)
    errors = [message for _, message in findings]
    return DocumentReport(is_valid=not errors, errors=errors, warnings=warnings)


def validate_document(candidate: Any, validator: Optional[Validator] = None) -> DocumentReport:
    """Structural report merged with the external validator's issues.

    Validator issues at a path a structural error already covers are dropped.
    """

    if not isinstance(candidate, dict):
        return structural_report(candidate)
    findings, warnings = _structural_findings(candidate)
    covered = {pointer for pointer, _ in findings}
    active = validator if validator is not None else JsonSchemaValidator()
    verdict = active.validate(candidate)
    if not isinstance(verdict, ValidationResult):
        verdict = ValidationResult.model_validate(verdict)
    errors = [message for _, message in findings]
    errors += [issue.line() for issue in verdict.errors if issue.instance_path not in covered]
    return DocumentReport(is_valid=not errors, errors=errors, warnings=warnings)


__all__ = [
    "DocumentReport",
    "GATE_FLAGS",
    "JsonSchemaValidator",
    "MAX_LISTED_ISSUES",
    "ValidationGate",
    "ValidationIssue",
    "ValidationResult",
    "Validator",
    "failure_message",
    "gate_flag_issues",
    "load_frm_schema",
    "structural_report",
    "summarize",
    "validate_document",
]
