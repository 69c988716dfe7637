"""Durable job store for the content queue."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from content_pipeline.queue.models import JobStatus, QueueJobCreate, QueueJobView, QueueTelemetry
from content_pipeline.storage.alembic_runner import upgrade_head
from content_pipeline.storage.common import (
    build_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from content_pipeline.storage.sqlmodel_models import ContentQueueJob

logger = logging.getLogger(__name__)

DEFAULT_LOCK_SECONDS = 300
ERROR_RATE_WINDOW = timedelta(hours=24)
THROUGHPUT_WINDOW = timedelta(hours=1)


class JobStore(Protocol):
    """Narrow persistence interface the queue and workers depend on."""

    def insert(self, job: QueueJobCreate, *, session: Session | None = None) -> str: ...

    def insert_many(
        self,
        jobs: Sequence[QueueJobCreate],
        *,
        session: Session | None = None,
    ) -> list[str]: ...

    def claim_next(
        self,
        *,
        worker_id: str,
        lock_seconds: int = DEFAULT_LOCK_SECONDS,
        exclude_job_types: Iterable[str] = (),
        job_types: Iterable[str] | None = None,
    ) -> QueueJobView | None: ...

    def update_status(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        status: JobStatus,
        from_status: JobStatus = JobStatus.PROCESSING,
        error_message: str | None = None,
        failure_category: str | None = None,
        result: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
    ) -> bool: ...

    def count_by_status(self) -> dict[str, int]: ...


class QueueRepository:
    """Queue persistence facade backed by SQLModel."""

    def __init__(self, database_url: str, *, engine: Engine | None = None) -> None:
        self.database_url = database_url
        self.engine = engine or build_engine(database_url)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.database_url)

    def insert(self, job: QueueJobCreate, *, session: Session | None = None) -> str:
        """Persist one pending job; flush-only when running inside a caller session."""

        return self.insert_many([job], session=session)[0]

    def insert_many(
        self,
        jobs: Sequence[QueueJobCreate],
        *,
        session: Session | None = None,
    ) -> list[str]:
        """Persist pending jobs in one transaction and return their ids in input order."""

        if not jobs:
            return []
        now = to_db_datetime(utc_now())
        rows = [_to_row(job, now=now) for job in jobs]
        if session is not None:
            session.add_all(rows)
            session.flush()
            return [row.id for row in rows]

        ids = [row.id for row in rows]
        with Session(self.engine) as own_session:
            own_session.add_all(rows)
            own_session.commit()
        return ids

    def claim_next(
        self,
        *,
        worker_id: str,
        lock_seconds: int = DEFAULT_LOCK_SECONDS,
        exclude_job_types: Iterable[str] = (),
        job_types: Iterable[str] | None = None,
    ) -> QueueJobView | None:
        """Atomically claim the highest-priority due job."""

        excluded = sorted(set(exclude_job_types))
        included = sorted(set(job_types)) if job_types is not None else None
        if included is not None and not included:
            return None
        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                statement = (
                    select(ContentQueueJob)
                    .where(
                        ContentQueueJob.status == JobStatus.PENDING.value,
                        _is_due(now),
                        _is_unlocked(now),
                    )
                    .order_by(
                        col(ContentQueueJob.priority).desc(),
                        col(ContentQueueJob.created_at).asc(),
                    )
                    .limit(1)
                )
                if excluded:
                    statement = statement.where(col(ContentQueueJob.job_type).not_in(excluded))
                if included is not None:
                    statement = statement.where(col(ContentQueueJob.job_type).in_(included))
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

            claimed = self._claim(
                job_id=candidate.id,
                worker_id=worker_id,
                lock_seconds=lock_seconds,
                now=now,
            )
            if claimed is not None:
                return claimed
            logger.debug("Lost claim race for job %s; retrying scan", candidate.id)

    def claim_by_id(
        self,
        job_id: str,
        *,
        worker_id: str,
        lock_seconds: int = DEFAULT_LOCK_SECONDS,
    ) -> QueueJobView | None:
        """Claim a specific job handed out by the dispatch accelerator."""

        return self._claim(
            job_id=job_id,
            worker_id=worker_id,
            lock_seconds=lock_seconds,
            now=to_db_datetime(utc_now()),
        )

    def _claim(
        self,
        *,
        job_id: str,
        worker_id: str,
        lock_seconds: int,
        now: datetime,
    ) -> QueueJobView | None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ContentQueueJob)
                .where(
                    col(ContentQueueJob.id) == job_id,
                    col(ContentQueueJob.status) == JobStatus.PENDING.value,
                    _is_due(now),
                    _is_unlocked(now),
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=ContentQueueJob.attempts + 1,
                    worker_id=worker_id,
                    locked_until=now + timedelta(seconds=lock_seconds),
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            claimed = session.exec(
                select(ContentQueueJob).where(ContentQueueJob.id == job_id),
            ).one()
            return _to_job_view(claimed)

    def update_status(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        status: JobStatus,
        from_status: JobStatus = JobStatus.PROCESSING,
        error_message: str | None = None,
        failure_category: str | None = None,
        result: dict[str, Any] | None = None,
        scheduled_for: datetime | None = None,
    ) -> bool:
        """Conditionally move a job from `from_status`; False when it already moved on."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": status.value,
            "error_message": error_message,
            "failure_category": failure_category,
            "locked_until": None,
            "updated_at": now,
        }
        if status in {JobStatus.COMPLETED, JobStatus.FAILED}:
            values["completed_at"] = now
        if result is not None:
            values["result"] = result
        if status == JobStatus.PENDING:
            values["worker_id"] = None
            values["scheduled_for"] = to_db_datetime(scheduled_for or utc_now())

        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(ContentQueueJob)
                .where(
                    col(ContentQueueJob.id) == job_id,
                    col(ContentQueueJob.status) == from_status.value,
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_job(self, job_id: str, *, result: dict[str, Any] | None = None) -> bool:
        """Mark a processing job as completed."""

        return self.update_status(job_id, status=JobStatus.COMPLETED, result=result)

    def fail_job(self, job_id: str, *, error_message: str, failure_category: str) -> bool:
        """Mark a processing job as permanently failed."""

        return self.update_status(
            job_id,
            status=JobStatus.FAILED,
            error_message=error_message,
            failure_category=failure_category,
        )

    def schedule_retry(
        self,
        job_id: str,
        *,
        run_after: datetime,
        error_message: str,
        failure_category: str,
    ) -> bool:
        """Return a processing job to pending, due at `run_after`."""

        return self.update_status(
            job_id,
            status=JobStatus.PENDING,
            error_message=error_message,
            failure_category=failure_category,
            scheduled_for=run_after,
        )

    def recover_stale_locks(self) -> int:
        """Reset processing jobs whose lock expired, e.g. after a worker crash."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(ContentQueueJob)
                .where(
                    col(ContentQueueJob.status) == JobStatus.PROCESSING.value,
                    col(ContentQueueJob.locked_until) <= now,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    locked_until=None,
                    worker_id=None,
                    error_message="Worker crashed or timed out; auto-recovered",
                    updated_at=now,
                ),
            )
            session.commit()
            recovered = outcome.rowcount or 0
        if recovered:
            logger.warning("Recovered %d stale job locks", recovered)
        return recovered

    def retry_failed_jobs(self, *, limit: int = 10) -> int:
        """Operator reset of failed jobs back to pending with a fresh attempt budget."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            failed_ids = session.exec(
                select(ContentQueueJob.id)
                .where(ContentQueueJob.status == JobStatus.FAILED.value)
                .order_by(col(ContentQueueJob.updated_at).asc())
                .limit(limit),
            ).all()
            if not failed_ids:
                return 0
            outcome = session.exec(
                sa_update(ContentQueueJob)
                .where(
                    col(ContentQueueJob.id).in_(failed_ids),
                    col(ContentQueueJob.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=0,
                    error_message=None,
                    failure_category=None,
                    scheduled_for=now,
                    locked_until=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
            return outcome.rowcount or 0

    def count_by_status(self) -> dict[str, int]:
        """Count jobs per status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ContentQueueJob.status, func.count())
                .group_by(ContentQueueJob.status),
            ).all()
        return {status: int(count) for status, count in sorted(rows)}

    def get_job(self, job_id: str) -> QueueJobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ContentQueueJob).where(ContentQueueJob.id == job_id),
            ).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[QueueJobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(ContentQueueJob)
                .order_by(col(ContentQueueJob.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(ContentQueueJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def queue_telemetry(self, *, now: datetime | None = None) -> QueueTelemetry:
        """Aggregate durable-store health numbers for stats and SLO alerting."""

        current = to_db_datetime(now or utc_now())
        error_window_start = current - ERROR_RATE_WINDOW
        with Session(self.engine) as session:
            oldest_pending = session.exec(
                select(func.min(ContentQueueJob.created_at)).where(
                    ContentQueueJob.status == JobStatus.PENDING.value,
                ),
            ).one()
            recent_total = session.exec(
                select(func.count()).where(col(ContentQueueJob.created_at) > error_window_start),
            ).one()
            recent_failed = session.exec(
                select(func.count()).where(
                    col(ContentQueueJob.created_at) > error_window_start,
                    ContentQueueJob.status == JobStatus.FAILED.value,
                ),
            ).one()
            throughput = session.exec(
                select(func.count()).where(
                    ContentQueueJob.status == JobStatus.COMPLETED.value,
                    col(ContentQueueJob.completed_at) > current - THROUGHPUT_WINDOW,
                ),
            ).one()
            durations = session.exec(
                select(ContentQueueJob.started_at, ContentQueueJob.completed_at)
                .where(
                    ContentQueueJob.status == JobStatus.COMPLETED.value,
                    col(ContentQueueJob.completed_at) > error_window_start,
                    col(ContentQueueJob.started_at).is_not(None),
                )
                .limit(1000),
            ).all()
            latest_started = session.exec(select(func.max(ContentQueueJob.started_at))).one()
            latest_completed = session.exec(select(func.max(ContentQueueJob.completed_at))).one()

        status_counts = self.count_by_status()
        durations_ms = [
            (finished - started).total_seconds() * 1000
            for started, finished in durations
            if started is not None and finished is not None
        ]
        latest_activity = max(
            (value for value in (latest_started, latest_completed) if value is not None),
            default=None,
        )
        return QueueTelemetry(
            status_counts=status_counts,
            oldest_pending_age_ms=_age_ms(current, oldest_pending),
            error_rate_24h=(
                round((int(recent_failed) / int(recent_total)) * 100, 2) if recent_total else 0.0
            ),
            throughput_per_hour=int(throughput),
            avg_processing_ms=(sum(durations_ms) / len(durations_ms)) if durations_ms else None,
            latest_worker_activity_age_ms=_age_ms(current, latest_activity),
        )


def _is_due(now: datetime):
    return or_(
        col(ContentQueueJob.scheduled_for).is_(None),
        col(ContentQueueJob.scheduled_for) <= now,
    )


def _is_unlocked(now: datetime):
    return or_(
        col(ContentQueueJob.locked_until).is_(None),
        col(ContentQueueJob.locked_until) <= now,
    )


def _age_ms(now: datetime, value: datetime | None) -> float | None:
    if value is None:
        return None
    return max(0.0, (now - to_db_datetime(value)).total_seconds() * 1000)


def _to_row(job: QueueJobCreate, *, now: datetime) -> ContentQueueJob:
    return ContentQueueJob(
        id=job.job_id or str(uuid4()),
        job_type=job.job_type,
        domain_id=job.domain_id,
        article_id=job.article_id,
        priority=job.priority,
        payload=dict(job.payload),
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=job.max_attempts,
        scheduled_for=to_db_datetime(job.scheduled_for) if job.scheduled_for else None,
        created_at=now,
        updated_at=now,
    )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: ContentQueueJob) -> QueueJobView:
    return QueueJobView(
        job_id=row.id,
        job_type=row.job_type,
        domain_id=row.domain_id,
        article_id=row.article_id,
        priority=row.priority,
        payload=dict(row.payload or {}),
        result=row.result,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        error_message=row.error_message,
        failure_category=row.failure_category,
        scheduled_for=_optional_aware(row.scheduled_for),
        locked_until=_optional_aware(row.locked_until),
        worker_id=row.worker_id,
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
