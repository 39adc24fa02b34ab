"""Five-stage evaluation of one job: load, extract, score, summarize, persist."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

from cv_evaluator.jobs.models import EvaluationResultData, JobWithDocuments
from cv_evaluator.jobs.repository import JobRepository
from cv_evaluator.llm.base import EvaluationGenerator
from cv_evaluator.pipeline.extraction import DocumentExtractor
from cv_evaluator.pipeline.parsing import (
    CV_SCALE,
    REPORT_SCALE,
    EvaluationOutcome,
    ScoreScale,
    parse_evaluation,
)
from cv_evaluator.pipeline.prompts import (
    REPORT_CONTEXT_QUERY,
    build_cv_prompt,
    build_report_prompt,
    build_summary_prompt,
    cv_context_query,
)

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK = "Failed to generate final summary."
DEFAULT_TOP_K = 4


class ContextSource(Protocol):
    def retrieve(self, query: str, limit: int) -> str: ...


class EvaluationOrchestrator:
    """Runs the evaluation stages for exactly one job.

    Either a complete result is saved (result row and ``completed`` status in
    one transaction) or an exception escapes with nothing written.
    """

    def __init__(
        self,
        *,
        job_store: JobRepository,
        extractor: DocumentExtractor,
        retriever: ContextSource,
        generator: EvaluationGenerator,
        top_k: int = DEFAULT_TOP_K,
    ) -> None:
        self.job_store = job_store
        self.extractor = extractor
        self.retriever = retriever
        self.generator = generator
        self.top_k = top_k

    def run(self, job_id: str) -> EvaluationResultData:
        logger.info("[pipeline] Starting evaluation for job %s", job_id)
        loaded = self.job_store.get_job_with_documents(job_id)
        title = loaded.job.title

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"job-{job_id[:8]}") as pool:
            cv_text, report_text = self._extract_texts(pool, loaded)
            logger.info(
                "[pipeline] Extracted text for job %s (cv=%d chars, report=%d chars)",
                job_id,
                len(cv_text),
                len(report_text),
            )

            cv_future = pool.submit(
                self._score,
                stage="cv",
                query=cv_context_query(title),
                prompt_builder=build_cv_prompt,
                document_text=cv_text,
                scale=CV_SCALE,
            )
            report_future = pool.submit(
                self._score,
                stage="report",
                query=REPORT_CONTEXT_QUERY,
                prompt_builder=build_report_prompt,
                document_text=report_text,
                scale=REPORT_SCALE,
            )
            cv_outcome = cv_future.result()
            report_outcome = report_future.result()

        logger.info(
            "[pipeline] Scored job %s (cv=%.2f report=%.2f)",
            job_id,
            cv_outcome.score,
            report_outcome.score,
        )
        summary = self._summarize(cv_outcome, report_outcome, title)

        data = EvaluationResultData(
            cv_match_rate=cv_outcome.score,
            cv_feedback=cv_outcome.feedback,
            project_score=report_outcome.score,
            project_feedback=report_outcome.feedback,
            overall_summary=summary,
        )
        self.job_store.save_evaluation_result(job_id, data)
        logger.info("[pipeline] Saved result for job %s", job_id)
        return data

    def _extract_texts(
        self,
        pool: ThreadPoolExecutor,
        loaded: JobWithDocuments,
    ) -> tuple[str, str]:
        cv_future = pool.submit(self.extractor.extract, Path(loaded.cv.stored_path))
        report_future = pool.submit(self.extractor.extract, Path(loaded.report.stored_path))
        return cv_future.result(), report_future.result()

    def _score(
        self,
        *,
        stage: str,
        query: str,
        prompt_builder: Callable[[str, str], str],
        document_text: str,
        scale: ScoreScale,
    ) -> EvaluationOutcome:
        context = self.retriever.retrieve(query, self.top_k)
        raw = self.generator.generate(prompt_builder(document_text, context), json_output=True)
        outcome = parse_evaluation(raw, scale=scale)
        if not outcome.parsed:
            logger.warning(
                "[pipeline] %s stage fell back to score 0: %s (raw=%r)",
                stage,
                outcome.diagnostic,
                (raw or "")[:200],
            )
        return outcome

    def _summarize(
        self,
        cv_outcome: EvaluationOutcome,
        report_outcome: EvaluationOutcome,
        title: str,
    ) -> str:
        raw = self.generator.generate(
            build_summary_prompt(cv_outcome, report_outcome, title),
            json_output=False,
        )
        summary = (raw or "").strip()
        if not summary:
            logger.warning("[pipeline] Summary stage returned nothing; using fallback text.")
            return SUMMARY_FALLBACK
        return summary
