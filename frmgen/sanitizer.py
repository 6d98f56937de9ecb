"""Fence stripping, JSON parsing and closed-schema pruning of generated documents.

All pruning is driven by ``PRUNE_TABLE``: a mapping from a section path
(dot-separated, ``[]`` marking array items) to the rule for objects found
there. Paths without a rule are copied through unchanged. Sanitizing an
already-sanitized document returns an equal document.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import ParseError

_LOGGER = logging.getLogger(__name__)

_FENCE_MARKER_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

TOP_LEVEL_SECTIONS: Tuple[str, ...] = (
    "metadata",
    "input",
    "modeling",
    "method_selection",
    "solution_and_analysis",
    "validation",
    "output_contract",
    "novelty_assurance",
)

DEFAULT_SAFETY_CONTENT = "No safety concerns identified"


@dataclass(frozen=True)
class PruneRule:
    """Closed property set for one section shape.

    ``stringify`` coerces every kept value to text. ``defaults`` fills missing
    keys, and ``choices`` resets out-of-range values to their default.
    ``when_not_object`` replaces a non-object value. ``required_strings``
    (array items only) drops items whose listed keys are not all strings.
    """

    keys: FrozenSet[str]
    stringify: bool = False
    defaults: Mapping[str, Any] = field(default_factory=dict)
    choices: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    when_not_object: Optional[Callable[[Any], Any]] = None
    required_strings: bool = False


def _rule(*keys: str, **kwargs: Any) -> PruneRule:
    return PruneRule(keys=frozenset(keys), **kwargs)


def _default_formatting(_: Any) -> Dict[str, Any]:
    return {"math_notation": "latex", "explanation_detail": "detailed"}


def _default_safety_note(value: Any) -> Dict[str, Any]:
    return {"flag": False, "content": value if isinstance(value, str) else DEFAULT_SAFETY_CONTENT}


PRUNE_TABLE: Dict[str, PruneRule] = {
    "": _rule(*TOP_LEVEL_SECTIONS),
    "method_selection": _rule("problem_type", "chosen_methods", "search_integration"),
    "method_selection.chosen_methods[]": _rule(
        "name", "justification", "prior_art_citations", "novelty_tag", "novelty_diff", "tolerances"
    ),
    "method_selection.search_integration": _rule("enabled", "tools_used", "strategy", "justification"),
    "solution_and_analysis": _rule(
        "solution_requests",
        "optimization_problem",
        "inference_problem",
        "simulation_scenario",
        "narrative_guidance",
    ),
    "solution_and_analysis.optimization_problem": _rule("objective", "constraints", "solver"),
    "solution_and_analysis.inference_problem": _rule("prior", "likelihood", "sampler"),
    "solution_and_analysis.simulation_scenario": _rule(
        "initial_state", "parameters", "inputs", "horizon", stringify=True
    ),
    "solution_and_analysis.narrative_guidance": _rule("style", "depth", "purpose"),
    "output_contract": _rule("sections_required", "formatting", "safety_note"),
    "output_contract.formatting": _rule(
        "math_notation",
        "explanation_detail",
        defaults={"math_notation": "latex", "explanation_detail": "detailed"},
        choices={"math_notation": ("latex", "unicode"), "explanation_detail": ("terse", "detailed")},
        when_not_object=_default_formatting,
    ),
    "output_contract.safety_note": _rule(
        "flag",
        "content",
        defaults={"flag": False, "content": DEFAULT_SAFETY_CONTENT},
        when_not_object=_default_safety_note,
    ),
    "novelty_assurance": _rule(
        "prior_work",
        "citations",
        "citation_checks",
        "similarity_assessment",
        "novelty_claims",
        "redundancy_check",
        "evidence_tracking",
        "evaluation_dataset",
        "error_handling",
    ),
    "novelty_assurance.citation_checks": _rule(
        "coverage_ratio", "paraphrase_overlap", "coverage_min_threshold", "conflicts"
    ),
    "novelty_assurance.citation_checks.conflicts[]": _rule(
        "citation_id", "issue", "resolution", required_strings=True
    ),
}


def strip_code_fences(text: str) -> str:
    """Remove Markdown code-fence markers and surrounding whitespace."""

    if text is None:
        raise ValueError("Input text must not be None")
    return _FENCE_MARKER_RE.sub("", text).strip()


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or value is None:
        return json.dumps(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def _child_path(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _apply_rule(obj: Dict[str, Any], rule: PruneRule, path: str) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in obj.items():
        if key not in rule.keys:
            continue
        result[key] = _as_text(value) if rule.stringify else _prune(value, _child_path(path, key))
    for key, default in rule.defaults.items():
        if key not in result:
            result[key] = default
        elif key in rule.choices and result[key] not in rule.choices[key]:
            result[key] = default
    return result


def _prune(value: Any, path: str) -> Any:
    rule = PRUNE_TABLE.get(path)
    if not isinstance(value, dict) and rule is not None and rule.when_not_object is not None:
        return rule.when_not_object(value)

    if isinstance(value, list):
        item_path = f"{path}[]"
        items = [_prune(item, item_path) for item in value]
        item_rule = PRUNE_TABLE.get(item_path)
        if item_rule is not None and item_rule.required_strings:
            items = [
                item
                for item in items
                if isinstance(item, dict) and all(isinstance(item.get(k), str) for k in item_rule.keys)
            ]
        return items

    if not isinstance(value, dict):
        return value
    if rule is None:
        return {key: _prune(child, _child_path(path, key)) for key, child in value.items()}
    return _apply_rule(value, rule, path)


def prune_document(document: Any) -> Any:
    """Return a pruned copy of ``document``; the input is not modified."""

    return _prune(document, "")


def _maybe_parse_json_string(value: Any) -> Any:
    if isinstance(value, str):
        candidate = strip_code_fences(value)
        if candidate.startswith("{") or candidate.startswith("["):
            try:
                return json.loads(candidate)
            except json.JSONDecodeError:
                return value
    return value


def parse_document(raw_text: str) -> Any:
    """Parse generated text, unwrapping one level of string-encoded JSON.

    A result that is still a bare string is a ParseError, so the output of
    this function is never text that ``sanitize`` would parse again.
    """

    cleaned = strip_code_fences(raw_text)
    try:
        document = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        _LOGGER.warning("Generated text is not valid JSON (%s)", exc)
        raise ParseError("Response was not valid JSON", text=cleaned) from exc
    if isinstance(document, str):
        _LOGGER.debug("Generated text was a JSON string; unwrapping one level")
        document = _maybe_parse_json_string(document)
        if isinstance(document, str):
            raise ParseError("Response was a JSON string, not a document", text=document)
    return document


def sanitize(raw: Any) -> Any:
    """Parse (when given text) and prune a generated document."""

    document = parse_document(raw) if isinstance(raw, str) else raw
    return prune_document(document)


__all__ = [
    "DEFAULT_SAFETY_CONTENT",
    "PRUNE_TABLE",
    "PruneRule",
    "TOP_LEVEL_SECTIONS",
    "parse_document",
    "prune_document",
    "sanitize",
    "strip_code_fences",
]
