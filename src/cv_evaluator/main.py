"""CLI entrypoint for cv-evaluator."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from cv_evaluator import __version__
from cv_evaluator.controllers import (
    EvaluateCommand,
    EvaluatorCliController,
    IngestCommand,
    JobsListCommand,
    QueueItemCommand,
    QueueListCommand,
    ReplayCommand,
    ResultCommand,
    UploadCommand,
    WorkerCommand,
)
from cv_evaluator.jobs.errors import EvaluationError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = EvaluatorCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="cv-evaluator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logging level.",
)
def cv_evaluator(log_level: str) -> None:
    """CV and project report evaluation CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cv_evaluator.command("upload")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--cv",
    "cv_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Candidate CV (PDF).",
)
@click.option(
    "--report",
    "report_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Candidate project report (PDF).",
)
def upload(db_path: Path | None, cv_path: Path, report_path: Path) -> None:
    """Store a CV and project report and print their document ids."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.upload(
                UploadCommand(db_path=db_path, cv_path=cv_path, report_path=report_path),
            ),
        ),
    )


@cv_evaluator.command("evaluate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--title", required=True, help="Job title the candidate applies for.")
@click.option("--cv-id", "cv_document_id", required=True, help="Uploaded CV document id.")
@click.option(
    "--report-id",
    "report_document_id",
    required=True,
    help="Uploaded project report document id.",
)
def evaluate(
    db_path: Path | None,
    title: str,
    cv_document_id: str,
    report_document_id: str,
) -> None:
    """Submit an evaluation job and print `{id, status}`."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.evaluate(
                EvaluateCommand(
                    db_path=db_path,
                    title=title,
                    cv_document_id=cv_document_id,
                    report_document_id=report_document_id,
                ),
            ),
        ),
    )


@cv_evaluator.command("result")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("job_id")
def result(db_path: Path | None, job_id: str) -> None:
    """Print job status, plus the evaluation once completed, as JSON."""

    _emit_lines(_run(lambda: CONTROLLER.result(ResultCommand(db_path=db_path, job_id=job_id))))


@cv_evaluator.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process at most one item per slot, or keep polling.",
)
@click.option(
    "--max-items",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed items per slot in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: never).",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Worker slots; overrides CV_EVALUATOR_WORKER_CONCURRENCY.",
)
@click.option(
    "--skip-ingestion",
    is_flag=True,
    default=False,
    help="Do not check the ground-truth collection before starting.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_items: int | None,
    max_idle_polls: int | None,
    concurrency: int | None,
    skip_ingestion: bool,
) -> None:
    """Run startup ingestion, then the evaluation worker pool."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_items=max_items,
                    concurrency=concurrency,
                    skip_ingestion=skip_ingestion,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@cv_evaluator.command("ingest")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def ingest(db_path: Path | None) -> None:
    """Ensure the ground-truth vector collection exists and is populated."""

    _emit_lines(_run(lambda: CONTROLLER.ingest(IngestCommand(db_path=db_path))))


@cv_evaluator.group("queue")
def queue() -> None:
    """Work queue inspection and recovery."""


@queue.command("items")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(["queued", "active", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max items to print.",
)
def queue_items(db_path: Path | None, status: str | None, limit: int) -> None:
    """List work items."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_items(
                QueueListCommand(
                    db_path=db_path,
                    status=status.lower() if status is not None else None,
                    limit=limit,
                ),
            ),
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id")
def queue_inspect(db_path: Path | None, item_id: str) -> None:
    """Show one work item with its event trail."""

    _emit_lines(
        _run(lambda: CONTROLLER.inspect_item(QueueItemCommand(db_path=db_path, item_id=item_id))),
    )


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("item_id")
def queue_retry(db_path: Path | None, item_id: str) -> None:
    """Re-queue a failed work item with a fresh attempt budget."""

    _emit_lines(
        _run(lambda: CONTROLLER.retry_item(QueueItemCommand(db_path=db_path, item_id=item_id))),
    )


@queue.command("replay")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("job_id")
def queue_replay(db_path: Path | None, job_id: str) -> None:
    """Enqueue a new work item for a job that has none pending."""

    _emit_lines(
        _run(lambda: CONTROLLER.replay_job(ReplayCommand(db_path=db_path, job_id=job_id))),
    )


@cv_evaluator.group("jobs")
def jobs() -> None:
    """Evaluation job inspection."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(["queued", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _run(
            lambda: CONTROLLER.list_jobs(
                JobsListCommand(
                    db_path=db_path,
                    status=status.lower() if status is not None else None,
                    limit=limit,
                ),
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (EvaluationError, ValueError, RuntimeError, OSError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cv_evaluator()
