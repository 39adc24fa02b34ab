"""Decoding of untrusted model output for the scoring stages.

A scoring response that cannot be decoded into ``{score, feedback}`` is not an
error: it becomes a fallback outcome with ``score = 0`` and a diagnostic
feedback string, so one bad response degrades the evaluation instead of
discarding it.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_FENCE_MARKER = re.compile(r"```(?:json)?", re.IGNORECASE)


@dataclass(slots=True, frozen=True)
class ScoreScale:
    label: str
    minimum: float
    maximum: float

    def contains(self, value: float) -> bool:
        return self.minimum <= value <= self.maximum


CV_SCALE = ScoreScale(label="CV", minimum=0.0, maximum=1.0)
REPORT_SCALE = ScoreScale(label="project report", minimum=1.0, maximum=5.0)


@dataclass(slots=True, frozen=True)
class EvaluationOutcome:
    """Decoded scoring stage output."""

    score: float
    feedback: str
    parsed: bool = True
    diagnostic: str | None = None


def strip_code_fences(raw: str) -> str:
    """Remove markdown code-fence markers around a JSON payload."""

    return _FENCE_MARKER.sub("", raw).strip()


def parse_evaluation(raw: str | None, *, scale: ScoreScale) -> EvaluationOutcome:
    """Decode ``raw`` into a validated outcome or a typed fallback."""

    if raw is None or not raw.strip():
        return _fallback(scale, "empty response")

    payload = _parse_json_payload(raw.strip())
    if payload is None:
        return _fallback(scale, "response is not a JSON object")

    score = payload.get("score")
    if isinstance(score, bool) or not isinstance(score, int | float):
        return _fallback(scale, "'score' is missing or not a number")
    if not scale.contains(float(score)):
        return _fallback(
            scale,
            f"'score' {score} outside {scale.minimum:g}-{scale.maximum:g}",
        )

    feedback = payload.get("feedback")
    if not isinstance(feedback, str):
        return _fallback(scale, "'feedback' is missing or not a string")

    return EvaluationOutcome(score=float(score), feedback=feedback.strip())


def _fallback(scale: ScoreScale, reason: str) -> EvaluationOutcome:
    diagnostic = f"Failed to parse LLM response for {scale.label} evaluation: {reason}."
    return EvaluationOutcome(score=0.0, feedback=diagnostic, parsed=False, diagnostic=reason)


def _parse_json_payload(text: str) -> dict[str, object] | None:
    direct = _try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    stripped = _try_load_dict(strip_code_fences(text))
    if stripped is not None:
        return stripped

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(text[start : end + 1])


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
