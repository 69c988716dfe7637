"""Queue worker that claims content jobs and runs registered handlers."""

from __future__ import annotations

import logging
import signal
import time
from collections import Counter
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, NamedTuple

from content_pipeline.queue.concurrency import ConcurrencyPlan
from content_pipeline.queue.content_queue import ContentQueue
from content_pipeline.queue.failure_categorizer import FailureClassification, categorize
from content_pipeline.queue.models import JobStatus, QueueJobView
from content_pipeline.queue.repository import DEFAULT_LOCK_SECONDS, QueueRepository
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueueJobView], dict[str, Any] | None]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    requeued: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.requeued += other.requeued
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls


class JobOutcome(NamedTuple):
    succeeded: bool
    retried: bool
    failed: bool


class QueueWorker:
    """Claims due jobs within per-job-type limits and runs them on a thread pool."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: QueueRepository,
        queue: ContentQueue,
        handlers: Mapping[str, JobHandler],
        plan: ConcurrencyPlan,
        worker_id: str,
        poll_interval_seconds: float = 5.0,
        lock_seconds: int = DEFAULT_LOCK_SECONDS,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 1800,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.handlers = dict(handlers)
        self.plan = plan
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.lock_seconds = lock_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Claim one batch of jobs and process it to completion."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self.repository.recover_stale_locks()
        jobs, requeued = self._claim_batch()
        summary.requeued = requeued
        if not jobs:
            summary.idle_polls = 1
            return summary

        summary.processed = len(jobs)
        with ThreadPoolExecutor(
            max_workers=len(jobs),
            thread_name_prefix=f"queue-worker-{self.worker_id}",
        ) as executor:
            outcomes = list(executor.map(self._process_job, jobs))
        for outcome in outcomes:
            summary.succeeded += int(outcome.succeeded)
            summary.retried += int(outcome.retried)
            summary.failed += int(outcome.failed)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, ``max_jobs`` were processed, or a stop signal arrives."""

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _claim_batch(self) -> tuple[list[QueueJobView], int]:
        """Claim up to the global limit; accelerator ids first, then a durable scan."""

        capacity = self.plan.default_limit
        claimed: list[QueueJobView] = []
        in_flight: Counter[str] = Counter()
        to_requeue: list[str] = []

        for job_id in self.queue.dequeue(capacity):
            job = self.repository.get_job(job_id)
            if job is None or job.status != JobStatus.PENDING:
                continue
            if len(claimed) >= capacity or not self._has_slot(job.job_type, in_flight):
                to_requeue.append(job_id)
                continue
            claimed_job = self.repository.claim_by_id(
                job_id,
                worker_id=self.worker_id,
                lock_seconds=self.lock_seconds,
            )
            if claimed_job is None:
                current = self.repository.get_job(job_id)
                if current is not None and current.status == JobStatus.PENDING:
                    to_requeue.append(job_id)
                continue
            claimed.append(claimed_job)
            in_flight[claimed_job.job_type] += 1

        if to_requeue:
            self.queue.requeue(to_requeue)

        while len(claimed) < capacity and not self._stop_requested:
            available = [
                job_type for job_type in self.handlers if self._has_slot(job_type, in_flight)
            ]
            if not available:
                break
            job = self.repository.claim_next(
                worker_id=self.worker_id,
                lock_seconds=self.lock_seconds,
                job_types=available,
            )
            if job is None:
                break
            claimed.append(job)
            in_flight[job.job_type] += 1

        if claimed:
            logger.info("Worker %s claimed %d jobs", self.worker_id, len(claimed))
        return claimed, len(to_requeue)

    def _has_slot(self, job_type: str, in_flight: Counter[str]) -> bool:
        if job_type not in self.handlers:
            return False
        return in_flight[job_type] < self.plan.limit_for(job_type)

    def _process_job(self, job: QueueJobView) -> JobOutcome:
        handler = self.handlers[job.job_type]
        try:
            result = handler(job)
        except Exception as error:  # noqa: BLE001
            return self._handle_failure(job, error)

        completed = self.repository.complete_job(job.job_id, result=result)
        if not completed:
            logger.warning("Job %s was no longer processing at completion", job.job_id)
        return JobOutcome(succeeded=completed, retried=False, failed=False)

    def _handle_failure(self, job: QueueJobView, error: Exception) -> JobOutcome:
        classification = categorize(error)
        message = f"{type(error).__name__}: {error}"
        if self._should_retry(job, error, classification):
            delay_seconds = self.compute_retry_delay(
                attempt=job.attempts,
                retry_after_seconds=classification.extracted_details.retry_after_seconds,
            )
            retried = self.repository.schedule_retry(
                job.job_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                error_message=message,
                failure_category=classification.category.value,
            )
            logger.info(
                "Job %s (%s) failed with %s; retry %d/%d in %.0fs",
                job.job_id,
                job.job_type,
                classification.category.value,
                job.attempts,
                job.max_attempts,
                delay_seconds,
            )
            return JobOutcome(succeeded=False, retried=retried, failed=False)

        failed = self.repository.fail_job(
            job.job_id,
            error_message=message,
            failure_category=classification.category.value,
        )
        logger.error(
            "Job %s (%s) failed permanently: %s",
            job.job_id,
            job.job_type,
            classification.category.value,
        )
        return JobOutcome(succeeded=False, retried=False, failed=failed)

    @staticmethod
    def _should_retry(
        job: QueueJobView,
        error: Exception,
        classification: FailureClassification,
    ) -> bool:
        if getattr(error, "retryable", None) is False or not classification.retryable:
            return False
        if job.attempts >= job.max_attempts:
            return False
        budget = classification.retry_budget
        return budget is None or job.attempts <= budget

    def compute_retry_delay(self, *, attempt: int, retry_after_seconds: int | None = None) -> float:
        """Exponential backoff capped at the maximum, never shorter than a server hint."""

        delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(attempt - 1, 0)),
        )
        if retry_after_seconds is not None:
            delay = max(delay, retry_after_seconds)
        return float(delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Worker %s stopping on %s", self.worker_id, signal.Signals(signum).name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
