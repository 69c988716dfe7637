from __future__ import annotations

import threading
from datetime import timedelta

import allure
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from content_pipeline.queue.models import JobStatus, QueueJobCreate
from content_pipeline.queue.repository import QueueRepository
from content_pipeline.storage.common import to_db_datetime, utc_now
from content_pipeline.storage.sqlmodel_models import ContentQueueJob

pytestmark = [
    allure.epic("Content Queue"),
    allure.feature("Durable Store Claims"),
]


def _expire_lock(repository: QueueRepository, job_id: str) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(ContentQueueJob)
            .where(col(ContentQueueJob.id) == job_id)
            .values(locked_until=to_db_datetime(utc_now() - timedelta(seconds=1))),
        )
        session.commit()


def test_insert_many_without_caller_session_returns_persisted_ids(
    repository: QueueRepository,
) -> None:
    ids = repository.insert_many(
        [
            QueueJobCreate(job_type="audit"),
            QueueJobCreate(job_type="publish", job_id="fixed-id"),
        ],
    )

    assert len(ids) == 2
    assert ids[1] == "fixed-id"
    stored = [repository.get_job(job_id) for job_id in ids]
    assert [job.job_type for job in stored if job is not None] == ["audit", "publish"]


def test_claim_orders_by_priority_then_age(repository: QueueRepository) -> None:
    low = repository.insert(QueueJobCreate(job_type="audit", priority=0))
    high = repository.insert(QueueJobCreate(job_type="audit", priority=5))
    low_later = repository.insert(QueueJobCreate(job_type="audit", priority=0))

    order = [
        repository.claim_next(worker_id="worker-a").job_id  # type: ignore[union-attr]
        for _ in range(3)
    ]

    assert order == [high, low, low_later]
    assert repository.claim_next(worker_id="worker-a") is None


def test_claim_sets_lock_and_attempts(repository: QueueRepository) -> None:
    job_id = repository.insert(QueueJobCreate(job_type="audit", payload={"url": "https://a.test"}))

    claimed = repository.claim_next(worker_id="worker-a", lock_seconds=60)

    assert claimed is not None
    assert claimed.job_id == job_id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.attempts == 1
    assert claimed.worker_id == "worker-a"
    assert claimed.payload == {"url": "https://a.test"}
    assert claimed.locked_until is not None
    assert claimed.started_at is not None
    assert claimed.locked_until > claimed.started_at


def test_future_jobs_are_not_claimable(repository: QueueRepository) -> None:
    repository.insert(
        QueueJobCreate(job_type="audit", scheduled_for=utc_now() + timedelta(minutes=5)),
    )

    assert repository.claim_next(worker_id="worker-a") is None


def test_claim_filters_by_job_type(repository: QueueRepository) -> None:
    audit = repository.insert(QueueJobCreate(job_type="audit", priority=9))
    refresh = repository.insert(QueueJobCreate(job_type="refresh", priority=1))

    assert repository.claim_next(worker_id="w", job_types=[]) is None
    excluded = repository.claim_next(worker_id="w", exclude_job_types=["audit"])
    assert excluded is not None
    assert excluded.job_id == refresh
    included = repository.claim_next(worker_id="w", job_types=["audit"])
    assert included is not None
    assert included.job_id == audit


def test_claim_by_id_is_conditional(repository: QueueRepository) -> None:
    job_id = repository.insert(QueueJobCreate(job_type="audit"))

    assert repository.claim_by_id(job_id, worker_id="worker-a") is not None
    assert repository.claim_by_id(job_id, worker_id="worker-b") is None
    assert repository.claim_by_id("missing", worker_id="worker-b") is None


def test_concurrent_claims_never_share_a_job(repository: QueueRepository) -> None:
    job_ids = repository.insert_many([QueueJobCreate(job_type="audit") for _ in range(12)])
    claimed: list[str] = []
    lock = threading.Lock()
    start = threading.Barrier(4)

    def claim_all(worker_id: str) -> None:
        start.wait(timeout=5)
        while True:
            job = repository.claim_next(worker_id=worker_id)
            if job is None:
                return
            with lock:
                claimed.append(job.job_id)

    threads = [
        threading.Thread(target=claim_all, args=(f"worker-{index}",)) for index in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(claimed) == sorted(job_ids)
    assert len(set(claimed)) == len(claimed)


def test_status_updates_are_conditional(repository: QueueRepository) -> None:
    job_id = repository.insert(QueueJobCreate(job_type="audit"))

    assert repository.complete_job(job_id) is False
    repository.claim_next(worker_id="worker-a")
    assert repository.complete_job(job_id, result={"ok": True}) is True
    assert repository.fail_job(job_id, error_message="late", failure_category="unknown") is False

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"ok": True}
    assert job.completed_at is not None
    assert job.locked_until is None


def test_schedule_retry_returns_job_to_pending(repository: QueueRepository) -> None:
    job_id = repository.insert(QueueJobCreate(job_type="audit"))
    repository.claim_next(worker_id="worker-a")
    run_after = utc_now() + timedelta(minutes=2)

    assert repository.schedule_retry(
        job_id,
        run_after=run_after,
        error_message="TimeoutError: timed out",
        failure_category="timeout",
    )

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.worker_id is None
    assert job.failure_category == "timeout"
    assert job.scheduled_for is not None
    assert abs((job.scheduled_for - run_after).total_seconds()) < 1
    assert repository.claim_next(worker_id="worker-a") is None


def test_recover_stale_locks(repository: QueueRepository) -> None:
    job_id = repository.insert(QueueJobCreate(job_type="audit"))
    repository.claim_next(worker_id="worker-a", lock_seconds=300)
    assert repository.recover_stale_locks() == 0

    _expire_lock(repository, job_id)

    assert repository.recover_stale_locks() == 1
    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.worker_id is None
    assert job.error_message == "Worker crashed or timed out; auto-recovered"
    reclaimed = repository.claim_next(worker_id="worker-b")
    assert reclaimed is not None
    assert reclaimed.attempts == 2


def test_retry_failed_jobs_resets_attempt_budget(repository: QueueRepository) -> None:
    job_id = repository.insert(QueueJobCreate(job_type="audit", max_attempts=1))
    repository.claim_next(worker_id="worker-a")
    repository.fail_job(job_id, error_message="boom", failure_category="unknown")

    assert repository.retry_failed_jobs(limit=5) == 1
    assert repository.retry_failed_jobs(limit=5) == 0

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.error_message is None
    assert job.completed_at is None


def test_list_jobs_and_counts(repository: QueueRepository) -> None:
    repository.insert_many([QueueJobCreate(job_type="audit") for _ in range(3)])
    repository.claim_next(worker_id="worker-a")

    assert repository.count_by_status() == {"pending": 2, "processing": 1}
    assert len(repository.list_jobs(status=JobStatus.PENDING)) == 2
    assert len(repository.list_jobs(limit=1)) == 1


def test_queue_telemetry(repository: QueueRepository) -> None:
    empty = repository.queue_telemetry()
    assert empty.total == 0
    assert empty.oldest_pending_age_ms is None
    assert empty.error_rate_24h == 0.0
    assert empty.latest_worker_activity_age_ms is None

    done, failed, _ = repository.insert_many([QueueJobCreate(job_type="audit") for _ in range(3)])
    repository.claim_by_id(done, worker_id="worker-a")
    repository.complete_job(done)
    repository.claim_by_id(failed, worker_id="worker-a")
    repository.fail_job(failed, error_message="boom", failure_category="unknown")

    telemetry = repository.queue_telemetry(now=utc_now() + timedelta(seconds=10))

    assert telemetry.status_counts == {"completed": 1, "failed": 1, "pending": 1}
    assert telemetry.pending == 1
    assert telemetry.error_rate_24h == 33.33
    assert telemetry.throughput_per_hour == 1
    assert telemetry.avg_processing_ms is not None
    assert telemetry.oldest_pending_age_ms is not None
    assert telemetry.oldest_pending_age_ms >= 10_000
    assert telemetry.latest_worker_activity_age_ms is not None
