from __future__ import annotations

import json
from datetime import timedelta

import allure
import pytest
from sqlmodel import Session

from content_pipeline.config import QUEUE_BACKEND_REDIS_DISPATCH
from content_pipeline.queue.content_queue import MISSING_REDIS_REASON, ContentQueue
from content_pipeline.queue.models import (
    JobStatus,
    QueueBackendName,
    QueueJobCreate,
    QueueMode,
    RedisStatus,
)
from content_pipeline.queue.repository import QueueRepository
from content_pipeline.storage.common import utc_now
from conftest import FakeRedis, build_queue

pytestmark = [
    allure.epic("Content Queue"),
    allure.feature("Durable Enqueue and Redis Dispatch"),
]

PENDING_KEY = "content-pipeline:content-queue:pending"
EVENT_KEY = "content-pipeline:content-queue:events"


def test_postgres_mode_writes_only_durable_store(
    repository: QueueRepository,
    durable_queue: ContentQueue,
) -> None:
    job_id = durable_queue.enqueue(QueueJobCreate(job_type="keyword_research", priority=3))

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.priority == 3
    assert durable_queue.mode == QueueMode.POSTGRES
    assert durable_queue.dequeue() == []

    health = durable_queue.health()
    assert health.selected_backend == QueueBackendName.DURABLE
    assert health.active_backend == QueueBackendName.DURABLE
    assert health.redis_status == RedisStatus.DISABLED
    assert health.redis_configured is False


def test_redis_dispatch_mirrors_ready_ids_and_events(
    redis_queue: ContentQueue,
    fake_redis: FakeRedis,
) -> None:
    job_ids = redis_queue.enqueue_many(
        [
            QueueJobCreate(job_type="keyword_research", domain_id="d-1", payload={"q": "seo"}),
            QueueJobCreate(job_type="content_refresh", article_id="a-9", priority=2),
        ],
    )

    assert fake_redis.lists[PENDING_KEY] == job_ids
    events = [json.loads(raw) for raw in fake_redis.lists[EVENT_KEY]]
    assert [event["id"] for event in events] == job_ids
    assert events[0]["jobType"] == "keyword_research"
    assert events[0]["domainId"] == "d-1"
    assert events[1]["articleId"] == "a-9"
    assert events[1]["priority"] == 2
    assert events[0]["scheduledFor"] is None

    health = redis_queue.health()
    assert health.active_backend == QueueBackendName.REDIS
    assert health.redis_status == RedisStatus.HEALTHY
    assert health.pending_depth == 2
    assert health.fallback_reason is None


def test_future_jobs_are_logged_but_not_dispatched(
    redis_queue: ContentQueue,
    fake_redis: FakeRedis,
) -> None:
    now = utc_now()
    later_id = redis_queue.enqueue(
        QueueJobCreate(job_type="content_refresh", scheduled_for=now + timedelta(hours=1)),
    )
    skewed_id = redis_queue.enqueue(
        QueueJobCreate(job_type="content_refresh", scheduled_for=now + timedelta(milliseconds=200)),
    )

    assert fake_redis.lists[PENDING_KEY] == [skewed_id]
    event_ids = [json.loads(raw)["id"] for raw in fake_redis.lists[EVENT_KEY]]
    assert event_ids == [later_id, skewed_id]


def test_event_log_is_trimmed_to_max_length(
    repository: QueueRepository,
    fake_redis: FakeRedis,
) -> None:
    queue = build_queue(repository, client=fake_redis, event_max_length=3)

    job_ids = queue.enqueue_many([QueueJobCreate(job_type="audit") for _ in range(5)])

    event_ids = [json.loads(raw)["id"] for raw in fake_redis.lists[EVENT_KEY]]
    assert event_ids == job_ids[-3:]
    assert fake_redis.lists[PENDING_KEY] == job_ids


def test_unreachable_redis_does_not_fail_enqueue(
    repository: QueueRepository,
    redis_queue: ContentQueue,
    fake_redis: FakeRedis,
) -> None:
    fake_redis.unreachable = True

    job_id = redis_queue.enqueue(QueueJobCreate(job_type="keyword_research"))

    assert repository.get_job(job_id) is not None
    assert redis_queue.dequeue() == []
    health = redis_queue.health()
    assert health.selected_backend == QueueBackendName.REDIS
    assert health.active_backend == QueueBackendName.DURABLE
    assert health.redis_status == RedisStatus.DEGRADED
    assert health.fallback_reason is not None
    assert health.last_error_at is not None
    assert "Connection refused" in (health.last_error_message or "")


def test_recovery_clears_fallback_reason(
    redis_queue: ContentQueue,
    fake_redis: FakeRedis,
) -> None:
    fake_redis.unreachable = True
    redis_queue.enqueue(QueueJobCreate(job_type="keyword_research"))
    assert redis_queue.health().redis_status == RedisStatus.DEGRADED

    fake_redis.unreachable = False
    recovered_id = redis_queue.enqueue(QueueJobCreate(job_type="keyword_research"))

    health = redis_queue.health()
    assert health.redis_status == RedisStatus.HEALTHY
    assert health.fallback_reason is None
    assert health.last_error_message is None
    assert redis_queue.dequeue() == [recovered_id]


def test_dequeue_and_requeue_round_trip(
    redis_queue: ContentQueue,
    fake_redis: FakeRedis,
) -> None:
    job_ids = redis_queue.enqueue_many([QueueJobCreate(job_type="audit") for _ in range(3)])

    first = redis_queue.dequeue(2)
    assert first == job_ids[:2]

    redis_queue.requeue(first[:1])
    assert fake_redis.lists[PENDING_KEY] == [job_ids[2], job_ids[0]]
    assert redis_queue.dequeue(500) == [job_ids[2], job_ids[0]]
    assert redis_queue.dequeue() == []


def test_requeue_is_noop_in_postgres_mode(durable_queue: ContentQueue) -> None:
    durable_queue.requeue(["job-1"])

    assert durable_queue.health().fallback_reason is None


def test_redis_mode_without_url_reports_unavailable(repository: QueueRepository) -> None:
    queue = build_queue(repository, client=None, backend=QUEUE_BACKEND_REDIS_DISPATCH)

    job_id = queue.enqueue(QueueJobCreate(job_type="keyword_research"))

    assert repository.get_job(job_id) is not None
    assert queue.dequeue() == []
    health = queue.health()
    assert health.redis_configured is False
    assert health.redis_status == RedisStatus.UNAVAILABLE
    assert health.active_backend == QueueBackendName.DURABLE
    assert health.fallback_reason == MISSING_REDIS_REASON


def test_enqueue_inside_caller_session_rolls_back_with_it(
    repository: QueueRepository,
    redis_queue: ContentQueue,
    fake_redis: FakeRedis,
) -> None:
    with Session(repository.engine) as session:
        job_id = redis_queue.enqueue(QueueJobCreate(job_type="publish"), session=session)
        session.rollback()

    assert repository.get_job(job_id) is None
    assert PENDING_KEY not in fake_redis.lists


def test_enqueue_inside_caller_session_commits_with_it(
    repository: QueueRepository,
    redis_queue: ContentQueue,
) -> None:
    with Session(repository.engine) as session:
        job_id = redis_queue.enqueue(QueueJobCreate(job_type="publish"), session=session)
        session.commit()

    assert repository.get_job(job_id) is not None


@pytest.mark.parametrize(
    "job",
    [
        QueueJobCreate(job_type=""),
        QueueJobCreate(job_type="   "),
        QueueJobCreate(job_type="audit", max_attempts=0),
    ],
)
def test_invalid_jobs_are_rejected_before_insert(
    repository: QueueRepository,
    redis_queue: ContentQueue,
    job: QueueJobCreate,
) -> None:
    with pytest.raises(ValueError):
        redis_queue.enqueue(job)

    assert repository.count_by_status() == {}


def test_health_serializes_with_dashboard_keys(redis_queue: ContentQueue) -> None:
    payload = redis_queue.health().to_dict()

    assert set(payload) == {
        "mode",
        "selectedBackend",
        "activeBackend",
        "redisConfigured",
        "redisStatus",
        "queueEventKey",
        "queuePendingKey",
        "pendingDepth",
        "fallbackReason",
        "lastErrorAt",
        "lastErrorMessage",
    }
    assert payload["mode"] == "redis_dispatch"
    assert payload["selectedBackend"] == "redis"
    assert payload["pendingDepth"] == 0
