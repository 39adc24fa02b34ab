"""Retrieval queries and prompt builders for the evaluation stages."""

from __future__ import annotations

from cv_evaluator.pipeline.parsing import CV_SCALE, REPORT_SCALE, EvaluationOutcome

REPORT_CONTEXT_QUERY = "rubric for evaluating backend project report (case study)"

_JSON_REPLY_FORMAT = """Reply ONLY with JSON in exactly this shape:
{{
  "score": <float between {minimum:.1f} and {maximum:.1f}>,
  "feedback": "<string>"
}}"""


def cv_context_query(job_title: str) -> str:
    return f"rubric and job description for evaluating candidate CV: {job_title}"


def build_cv_prompt(cv_text: str, context: str) -> str:
    return f"""You are a senior technical recruiter evaluating a candidate's CV.
You MUST reply with valid JSON only.

CONTEXT (job description and scoring rubric):
---
{context}
---

CANDIDATE CV:
---
{cv_text}
---

Instructions:
1. Compare the CANDIDATE CV against the CONTEXT.
2. Give a "score" from {CV_SCALE.minimum:.1f} to {CV_SCALE.maximum:.1f} for how well the CV \
matches the CONTEXT; {CV_SCALE.maximum:.1f} is a perfect match.
3. Give "feedback" summarising the candidate's strengths and gaps against the CONTEXT.

{_JSON_REPLY_FORMAT.format(minimum=CV_SCALE.minimum, maximum=CV_SCALE.maximum)}
"""


def build_report_prompt(report_text: str, context: str) -> str:
    return f"""You are a principal backend engineer evaluating a candidate's project report \
(case study).
You MUST reply with valid JSON only.

CONTEXT (case study scoring rubric):
---
{context}
---

CANDIDATE PROJECT REPORT:
---
{report_text}
---

Instructions:
1. Compare the CANDIDATE PROJECT REPORT against the rubric in CONTEXT.
2. Give a "score" from {REPORT_SCALE.minimum:.1f} to {REPORT_SCALE.maximum:.1f} for how well the \
report meets the rubric; {REPORT_SCALE.maximum:.1f} is flawless.
3. Give "feedback" summarising the report's strengths and weaknesses.

{_JSON_REPLY_FORMAT.format(minimum=REPORT_SCALE.minimum, maximum=REPORT_SCALE.maximum)}
"""


def build_summary_prompt(cv: EvaluationOutcome, report: EvaluationOutcome, job_title: str) -> str:
    return f"""You are an engineering manager writing the hiring summary for a \
{job_title} candidate.
Reply with a single plain-text paragraph, no JSON and no markdown.

CV evaluation (Score: {cv.score}/{CV_SCALE.maximum:.1f}):
{cv.feedback}

Project evaluation (Score: {report.score}/{REPORT_SCALE.maximum:.1f}):
{report.feedback}

Instructions:
Write 3-5 sentences covering the candidate's main strengths, main gaps, and a clear \
recommendation on whether to move them forward.
"""
