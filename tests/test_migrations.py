from pathlib import Path

import allure
from sqlalchemy import inspect, text

from cv_evaluator.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Evaluation Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalars()
        assert list(version) == ["20261019_0001"]

    tables = set(inspect(repository.engine).get_table_names())
    assert {
        "documents",
        "evaluation_jobs",
        "evaluation_results",
        "work_items",
        "work_item_events",
        "ingestion_locks",
    } <= tables

    unique_columns = {
        tuple(constraint["column_names"])
        for constraint in inspect(repository.engine).get_unique_constraints("evaluation_results")
    }
    unique_indexes = {
        tuple(index["column_names"])
        for index in inspect(repository.engine).get_indexes("evaluation_results")
        if index["unique"]
    }
    assert ("job_id",) in unique_columns | unique_indexes
    repository.close()
