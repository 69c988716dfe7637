from pathlib import Path

import allure
from sqlalchemy import inspect, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateTable

from content_pipeline.queue.repository import QueueRepository
from content_pipeline.storage.sqlmodel_models import ContentQueueJob, ResearchCacheEntry

pytestmark = [
    allure.epic("Content Queue"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = QueueRepository(f"sqlite:///{tmp_path / 'migrations.db'}")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
    assert version == "20261012_0002"

    inspector = inspect(repository.engine)
    assert {"content_queue", "research_cache"} <= set(inspector.get_table_names())
    queue_columns = {column["name"] for column in inspector.get_columns("content_queue")}
    assert {
        "job_type",
        "domain_id",
        "article_id",
        "priority",
        "payload",
        "status",
        "scheduled_for",
        "attempts",
        "max_attempts",
        "locked_until",
        "worker_id",
        "failure_category",
    } <= queue_columns
    repository.close()


def test_timestamps_are_naive_utc_columns_on_postgresql() -> None:
    for table in (ContentQueueJob.__table__, ResearchCacheEntry.__table__):
        statement = CreateTable(table)  # type: ignore[arg-type]
        ddl = str(statement.compile(dialect=postgresql.dialect()))

        assert "TIMESTAMP WITHOUT TIME ZONE" in ddl
        assert "WITH TIME ZONE" not in ddl.replace("WITHOUT TIME ZONE", "")
