from __future__ import annotations

import allure
import pytest

from cv_evaluator.pipeline.parsing import (
    CV_SCALE,
    REPORT_SCALE,
    parse_evaluation,
    strip_code_fences,
)

pytestmark = [
    allure.epic("Evaluation Pipeline"),
    allure.feature("Model Output Decoding"),
]


def test_strip_code_fences_removes_json_fence() -> None:
    raw = '```json\n{"score": 0.5, "feedback": "ok"}\n```'
    assert strip_code_fences(raw) == '{"score": 0.5, "feedback": "ok"}'


def test_strip_code_fences_leaves_plain_json_alone() -> None:
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


def test_valid_cv_response_is_decoded() -> None:
    outcome = parse_evaluation('{"score": 0.8, "feedback": " Strong fit. "}', scale=CV_SCALE)

    assert outcome.parsed
    assert outcome.score == 0.8
    assert outcome.feedback == "Strong fit."
    assert outcome.diagnostic is None


def test_fenced_response_with_prose_is_decoded() -> None:
    raw = 'Here you go:\n```json\n{"score": 4, "feedback": "Clean design."}\n```\nThanks!'
    outcome = parse_evaluation(raw, scale=REPORT_SCALE)

    assert outcome.parsed
    assert outcome.score == 4.0
    assert isinstance(outcome.score, float)


def test_brace_span_inside_text_is_decoded() -> None:
    raw = 'Result: {"score": 0.25, "feedback": "Junior."} end'
    assert parse_evaluation(raw, scale=CV_SCALE).score == 0.25


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        (None, "empty response"),
        ("   ", "empty response"),
        ("not json", "not a JSON object"),
        ("[1, 2, 3]", "not a JSON object"),
        ('{"feedback": "no score"}', "'score' is missing"),
        ('{"score": "0.9", "feedback": "text score"}', "'score' is missing"),
        ('{"score": true, "feedback": "bool score"}', "'score' is missing"),
        ('{"score": 1.5, "feedback": "too high"}', "outside 0-1"),
        ('{"score": 0.5}', "'feedback' is missing"),
        ('{"score": 0.5, "feedback": 42}', "'feedback' is missing"),
    ],
)
def test_invalid_cv_responses_fall_back_to_zero(raw: str | None, reason: str) -> None:
    outcome = parse_evaluation(raw, scale=CV_SCALE)

    assert not outcome.parsed
    assert outcome.score == 0.0
    assert outcome.diagnostic is not None
    assert reason in outcome.diagnostic
    assert outcome.feedback.startswith("Failed to parse LLM response for CV evaluation")


def test_report_score_below_scale_falls_back() -> None:
    outcome = parse_evaluation('{"score": 0.5, "feedback": "low"}', scale=REPORT_SCALE)

    assert not outcome.parsed
    assert outcome.score == 0.0
    assert "project report" in outcome.feedback
