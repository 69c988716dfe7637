"""Content queue: durable enqueue with optional Redis dispatch acceleration."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlmodel import Session

from content_pipeline.config import QUEUE_BACKEND_REDIS_DISPATCH, QueueSettings
from content_pipeline.queue.accelerator import RedisDispatcher
from content_pipeline.queue.models import (
    DispatchEvent,
    QueueBackendHealth,
    QueueBackendName,
    QueueJobCreate,
    QueueMode,
    RedisStatus,
)
from content_pipeline.queue.repository import JobStore
from content_pipeline.storage.common import to_utc_aware_datetime, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DEQUEUE_IDS = 20
MISSING_REDIS_REASON = "Queue backend is redis_dispatch but no Redis URL is configured"


@dataclass(slots=True)
class ContentQueue:
    """Canonical entry point for submitting and dispatching content jobs.

    The durable store is always written first and is the only source of truth.
    In ``redis_dispatch`` mode ready job ids are mirrored into Redis after the
    durable insert; accelerator failures only demote the queue to durable-only
    dispatch and are reported through ``health()``.
    """

    store: JobStore
    settings: QueueSettings
    dispatcher: RedisDispatcher

    @classmethod
    def from_settings(
        cls,
        store: JobStore,
        settings: QueueSettings,
        *,
        dispatcher: RedisDispatcher | None = None,
    ) -> ContentQueue:
        return cls(
            store=store,
            settings=settings,
            dispatcher=dispatcher or RedisDispatcher.from_settings(settings),
        )

    @property
    def mode(self) -> QueueMode:
        if self.settings.backend == QUEUE_BACKEND_REDIS_DISPATCH:
            return QueueMode.REDIS_DISPATCH
        return QueueMode.POSTGRES

    @property
    def accelerated(self) -> bool:
        return self.mode == QueueMode.REDIS_DISPATCH

    def enqueue(self, job: QueueJobCreate, *, session: Session | None = None) -> str:
        """Persist one job and return its id."""

        return self.enqueue_many([job], session=session)[0]

    def enqueue_many(
        self,
        jobs: Sequence[QueueJobCreate],
        *,
        session: Session | None = None,
    ) -> list[str]:
        """Persist jobs durably, then mirror ready ids to the accelerator.

        With a caller-supplied ``session`` only the durable insert happens, so
        the jobs commit or roll back together with the caller's own writes.
        """

        if not jobs:
            return []
        for job in jobs:
            _validate_job(job)

        ids = self.store.insert_many(jobs, session=session)
        if session is not None or not self.accelerated:
            return ids

        now = utc_now()
        events = [
            DispatchEvent(
                job_id=job_id,
                job_type=job.job_type,
                domain_id=job.domain_id,
                article_id=job.article_id,
                priority=job.priority,
                scheduled_for=(
                    to_utc_aware_datetime(job.scheduled_for) if job.scheduled_for else None
                ),
                enqueued_at=now,
            )
            for job_id, job in zip(ids, jobs, strict=True)
        ]
        ready_ids = [
            job_id
            for job_id, job in zip(ids, jobs, strict=True)
            if self.is_ready_for_dispatch(job.scheduled_for, now=now)
        ]
        self.dispatcher.publish(ready_ids, events)
        logger.debug("Enqueued %d jobs (%d dispatched immediately)", len(ids), len(ready_ids))
        return ids

    def is_ready_for_dispatch(self, scheduled_for: datetime | None, *, now: datetime) -> bool:
        """Jobs due now, allowing for a small clock skew, are eligible for the pending list."""

        if scheduled_for is None:
            return True
        tolerance = timedelta(seconds=self.settings.ready_tolerance_seconds)
        return to_utc_aware_datetime(scheduled_for) <= now + tolerance

    def dequeue(self, max_ids: int = DEFAULT_DEQUEUE_IDS) -> list[str]:
        """Pop ready ids; an empty list means "scan the durable store", not "no work"."""

        if not self.accelerated:
            return []
        if not self.dispatcher.configured:
            self.dispatcher.record_error(MISSING_REDIS_REASON)
            return []
        return self.dispatcher.pop(max_ids)

    def requeue(self, job_ids: Sequence[str]) -> None:
        """Hand ids back to the accelerator after an unsuccessful claim."""

        if not self.accelerated or not job_ids:
            return
        if not self.dispatcher.configured:
            self.dispatcher.record_error(MISSING_REDIS_REASON)
            return
        self.dispatcher.push(list(job_ids))

    def health(self) -> QueueBackendHealth:
        """Describe selected and active dispatch backends for ops tooling."""

        configured = self.dispatcher.configured
        if not self.accelerated:
            state = self.dispatcher.error_state()
            return self._health(
                selected=QueueBackendName.DURABLE,
                active=QueueBackendName.DURABLE,
                redis_status=RedisStatus.DISABLED,
                pending_depth=None,
                fallback_reason=None,
                last_error_at=state.last_error_at,
                last_error_message=state.last_error_message,
            )

        if not configured:
            state = self.dispatcher.error_state()
            return self._health(
                selected=QueueBackendName.REDIS,
                active=QueueBackendName.DURABLE,
                redis_status=RedisStatus.UNAVAILABLE,
                pending_depth=None,
                fallback_reason=state.fallback_reason or MISSING_REDIS_REASON,
                last_error_at=state.last_error_at,
                last_error_message=state.last_error_message,
            )

        depth = self.dispatcher.probe()
        state = self.dispatcher.error_state()
        if depth is None:
            return self._health(
                selected=QueueBackendName.REDIS,
                active=QueueBackendName.DURABLE,
                redis_status=RedisStatus.DEGRADED,
                pending_depth=None,
                fallback_reason=state.fallback_reason,
                last_error_at=state.last_error_at,
                last_error_message=state.last_error_message,
            )
        return self._health(
            selected=QueueBackendName.REDIS,
            active=QueueBackendName.REDIS,
            redis_status=RedisStatus.DEGRADED if state.fallback_reason else RedisStatus.HEALTHY,
            pending_depth=depth,
            fallback_reason=state.fallback_reason,
            last_error_at=state.last_error_at,
            last_error_message=state.last_error_message,
        )

    def _health(  # noqa: PLR0913
        self,
        *,
        selected: QueueBackendName,
        active: QueueBackendName,
        redis_status: RedisStatus,
        pending_depth: int | None,
        fallback_reason: str | None,
        last_error_at: datetime | None,
        last_error_message: str | None,
    ) -> QueueBackendHealth:
        return QueueBackendHealth(
            mode=self.mode,
            selected_backend=selected,
            active_backend=active,
            redis_configured=self.dispatcher.configured,
            redis_status=redis_status,
            event_key=self.settings.event_key,
            pending_key=self.settings.pending_key,
            pending_depth=pending_depth,
            fallback_reason=fallback_reason,
            last_error_at=last_error_at,
            last_error_message=last_error_message,
        )


def _validate_job(job: QueueJobCreate) -> None:
    if not job.job_type or not job.job_type.strip():
        raise ValueError("Queue job requires a non-empty job_type.")
    if job.max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {job.max_attempts}.")
    if not isinstance(job.payload, dict):
        raise ValueError("Queue job payload must be a mapping.")
