"""
Structured extraction of scored candidates from raw model output.

Models return JSON in several shapes: a bare array, an object wrapping the
array ({"relationships": [...]}), a single item object, JSON inside a
markdown fence, or JSON surrounded by prose. Sometimes the output is
truncated. extract() handles all of these and never raises:

1. Parse the whole text as JSON
2. Otherwise parse the first balanced [...] / {...} substring that is valid JSON
3. Otherwise give up with []

The parsed payload is unwrapped into a candidate list, then each candidate is
validated:
- its target id must be one of the known entity ids (no hallucinated references)
- score must be numeric; score and confidence are clamped into [0, 1]
- items below min_score are dropped

Survivors are sorted by score (descending, stable) and truncated to max_items.

Usage:
    items = extract(raw_text, {"n1", "n2"}, max_items=5, fields=RELATIONSHIP_FIELDS)
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_MIN_SCORE = 0.6
DEFAULT_CONFIDENCE = 0.7

# Object keys models use to wrap the candidate array
WRAPPER_FIELDS = ("relationships", "recommendations", "issues", "items", "results", "data")

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_UNPARSEABLE = object()


@dataclass(frozen=True)
class FieldMap:
    """Accepted key aliases per item field, in priority order."""

    target_id: Tuple[str, ...]
    score: Tuple[str, ...]
    label: Tuple[str, ...]
    reasoning: Tuple[str, ...]
    confidence: Tuple[str, ...] = ("confidence",)
    default_label: str = "related"
    default_reasoning: str = "AI-generated assessment"


RELATIONSHIP_FIELDS = FieldMap(
    target_id=("targetNodeId", "target_node_id", "targetId", "target_id", "nodeId", "node_id"),
    score=("strength", "score", "similarity"),
    label=("relationshipType", "relationship_type", "type", "label"),
    reasoning=("reasoning", "explanation", "rationale"),
    default_label="related",
    default_reasoning="AI-generated relationship",
)

RECOMMENDATION_FIELDS = FieldMap(
    target_id=("issueId", "issue_id", "targetId", "target_id", "id"),
    score=("relevanceScore", "relevance_score", "score"),
    label=("label", "category"),
    reasoning=("explanation", "reasoning", "rationale"),
    default_label="recommended",
    default_reasoning="AI-generated recommendation",
)


@dataclass(frozen=True)
class EvaluationItem:
    target_id: str
    label: str
    score: float
    confidence: float
    reasoning: str

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "label": self.label,
            "score": self.score,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
        }


def _strip_code_fence(text: str) -> str:
    match = _FENCE_PATTERN.search(text)
    return match.group(1) if match else text


def _balanced_spans(text: str) -> Dict[int, int]:
    """
    Map each opening bracket to the index just past its closing bracket.

    One pass with a bracket stack. Quotes only open strings while a bracket
    is open, so prose quotes around JSON do not hide it. A mismatched closer
    drops every bracket still open; brackets still open at the end of text
    (truncated output) get no entry, while complete items nested inside them do.
    """
    closing = {"[": "]", "{": "}"}
    spans: Dict[int, int] = {}
    stack: List[Tuple[int, str]] = []
    in_string = False
    escaped = False

    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"' and stack:
            in_string = True
        elif ch in closing:
            stack.append((i, closing[ch]))
        elif ch in ("]", "}") and stack:
            start, expected = stack.pop()
            if ch == expected:
                spans[start] = i + 1
            else:
                stack.clear()
    return spans


def find_json_fragment(text: str) -> Any:
    """Parse the first balanced JSON array/object embedded in text."""
    for start, end in sorted(_balanced_spans(text).items()):
        try:
            return json.loads(text[start:end])
        except (ValueError, RecursionError):
            continue
    return _UNPARSEABLE


def parse_payload(raw_text: str) -> Any:
    """Best-effort JSON decode; returns the _UNPARSEABLE sentinel on failure."""
    if not raw_text or not raw_text.strip():
        return _UNPARSEABLE

    text = _strip_code_fence(raw_text).strip()
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        pass
    return find_json_fragment(text)


def _first(item: dict, keys: Iterable[str]) -> Any:
    for key in keys:
        if key in item and item[key] is not None:
            return item[key]
    return None


def unwrap_candidates(payload: Any, fields: FieldMap) -> List[Any]:
    """
    Normalize a decoded payload into a candidate list.

    list                        -> itself
    object with a wrapper list  -> the wrapped list
    object that is one item     -> [object]
    anything else               -> []
    """
    if payload is _UNPARSEABLE:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in WRAPPER_FIELDS:
            if isinstance(payload.get(key), list):
                return payload[key]
        if _first(payload, fields.target_id) is not None:
            return [payload]
    return []


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _as_id(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        return str(value).strip() or None
    return None


def _to_item(candidate: Any, known_ids: frozenset, fields: FieldMap) -> Optional[EvaluationItem]:
    if not isinstance(candidate, dict):
        return None

    target_id = _as_id(_first(candidate, fields.target_id))
    if target_id is None or target_id not in known_ids:
        return None

    score = _as_float(_first(candidate, fields.score))
    if score is None:
        return None

    confidence = _as_float(_first(candidate, fields.confidence))
    label = _first(candidate, fields.label)
    reasoning = _first(candidate, fields.reasoning)

    return EvaluationItem(
        target_id=target_id,
        label=str(label) if label else fields.default_label,
        score=_clamp(score),
        confidence=_clamp(confidence) if confidence is not None else DEFAULT_CONFIDENCE,
        reasoning=str(reasoning) if reasoning else fields.default_reasoning,
    )


def extract(
    raw_text: Any,
    known_ids: Iterable[Any],
    max_items: int,
    fields: FieldMap = RELATIONSHIP_FIELDS,
    min_score: float = DEFAULT_MIN_SCORE,
) -> List[EvaluationItem]:
    """Parse, validate, rank and bound model output. Never raises."""
    try:
        if max_items <= 0 or not isinstance(raw_text, str):
            return []

        known = frozenset(i for i in (_as_id(k) for k in known_ids) if i is not None)
        candidates = unwrap_candidates(parse_payload(raw_text), fields)

        items: List[EvaluationItem] = []
        for candidate in candidates:
            item = _to_item(candidate, known, fields)
            if item is not None and item.score >= min_score:
                items.append(item)

        # sorted() is stable, so equal scores keep the model's order
        ranked = sorted(items, key=lambda i: i.score, reverse=True)[:max_items]

        logger.debug(
            "Model output extracted",
            candidates=len(candidates),
            valid=len(items),
            returned=len(ranked),
            min_score=min_score,
        )
        return ranked
    except Exception as e:
        logger.warning("Output extraction failed, returning no items", error=str(e))
        return []
