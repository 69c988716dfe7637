"""Controllers for content-pipeline CLI commands."""

from __future__ import annotations

import json
import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from content_pipeline.config import Settings
from content_pipeline.handlers import LINK_HEALTH_JOB_TYPE, LinkHealthHandler
from content_pipeline.http.guard import validate_url_with_policy
from content_pipeline.queue.concurrency import build_concurrency_plan
from content_pipeline.queue.content_queue import ContentQueue
from content_pipeline.queue.models import QueueJobCreate
from content_pipeline.queue.repository import QueueRepository
from content_pipeline.queue.slo import (
    AlertSeverity,
    QueueSloThresholds,
    build_queue_slo_alerts,
    render_alert_lines,
    snapshot_from_telemetry,
)
from content_pipeline.queue.worker import JobHandler, QueueWorker
from content_pipeline.research.cache import REFRESH_JOB_TYPE, ResearchCache
from content_pipeline.research.http_generator import HttpResearchGenerator
from content_pipeline.research.repository import ResearchCacheRepository


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for job enqueue."""

    database_url: str | None
    job_type: str
    payload: dict[str, object]
    priority: int
    max_attempts: int
    domain_id: str | None = None
    article_id: str | None = None
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class QueueCommand:
    """CLI input for commands that only need the queue runtime."""

    database_url: str | None


@dataclass(slots=True)
class DequeueCommand:
    database_url: str | None
    max_ids: int


@dataclass(slots=True)
class RequeueCommand:
    database_url: str | None
    job_ids: tuple[str, ...]


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    database_url: str | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1


@dataclass(slots=True)
class RetryFailedCommand:
    database_url: str | None
    limit: int


@dataclass(slots=True)
class ResearchLookupCommand:
    database_url: str | None
    query_text: str
    domain_priority: int


@dataclass(slots=True)
class CommandResult:
    lines: list[str]
    success: bool = True


class PipelineCliController:
    """Coordinates queue, worker, research cache and fetch-guard CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (_, queue):
            job_id = queue.enqueue(
                QueueJobCreate(
                    job_type=command.job_type,
                    domain_id=command.domain_id,
                    article_id=command.article_id,
                    priority=command.priority,
                    payload=dict(command.payload),
                    max_attempts=command.max_attempts,
                    scheduled_for=command.scheduled_for,
                ),
            )
        return [f"Job enqueued: job_id={job_id} type={command.job_type}"]

    def health(self, command: QueueCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (_, queue):
            health = queue.health()
        return [json.dumps(health.to_dict(), indent=2)]

    def dequeue(self, command: DequeueCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (_, queue):
            job_ids = queue.dequeue(command.max_ids)
        if not job_ids:
            return ["No ids dequeued; scan the durable store for due jobs."]
        return job_ids

    def requeue(self, command: RequeueCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (_, queue):
            queue.requeue(list(command.job_ids))
        return [f"Requeued {len(command.job_ids)} ids."]

    def stats(self, command: QueueCommand) -> list[str]:
        """Show durable queue counters and accelerator state."""

        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (repository, queue):
            telemetry = repository.queue_telemetry()
            health = queue.health()

        counts = " ".join(
            f"{status}={count}" for status, count in sorted(telemetry.status_counts.items())
        )
        return [
            f"Jobs: total={telemetry.total} {counts}".rstrip(),
            f"Oldest pending age: {_format_ms(telemetry.oldest_pending_age_ms)}",
            f"Error rate 24h: {telemetry.error_rate_24h:.2f}%",
            f"Throughput: {telemetry.throughput_per_hour} completed/hour",
            f"Avg processing time: {_format_ms(telemetry.avg_processing_ms)}",
            f"Latest worker activity: {_format_ms(telemetry.latest_worker_activity_age_ms)} ago",
            "Dispatch: "
            f"mode={health.mode.value} active={health.active_backend.value} "
            f"redis={health.redis_status.value}",
        ]

    def slo(self, command: QueueCommand) -> CommandResult:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (repository, _):
            telemetry = repository.queue_telemetry()
        alerts = build_queue_slo_alerts(
            snapshot_from_telemetry(telemetry),
            QueueSloThresholds.from_settings(settings.slo),
        )
        return CommandResult(
            lines=render_alert_lines(alerts),
            success=all(alert.severity != AlertSeverity.CRITICAL for alert in alerts),
        )

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (repository, queue):
            research_repository = ResearchCacheRepository(
                settings.database_url,
                engine=repository.engine,
            )
            generator = _research_generator(settings)
            research_cache = ResearchCache(
                repository=research_repository,
                settings=settings.research,
                generator=generator,
                queue=queue,
            )
            handlers: dict[str, JobHandler] = {
                REFRESH_JOB_TYPE: research_cache.handle_refresh_job,
                LINK_HEALTH_JOB_TYPE: LinkHealthHandler(settings.fetch),
            }
            worker = QueueWorker(
                repository=repository,
                queue=queue,
                handlers=handlers,
                plan=build_concurrency_plan(settings.worker),
                worker_id=settings.worker.worker_id or f"{socket.gethostname()}-{os.getpid()}",
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                lock_seconds=settings.worker.lock_seconds,
                retry_base_seconds=settings.worker.retry_base_seconds,
                retry_max_seconds=settings.worker.retry_max_seconds,
            )
            try:
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
            finally:
                if generator is not None:
                    generator.close()

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"requeued={summary.requeued} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def retry_failed(self, command: RetryFailedCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (repository, _):
            reset = repository.retry_failed_jobs(limit=command.limit)
        return [f"Reset {reset} failed jobs to pending."]

    def research_lookup(self, command: ResearchLookupCommand) -> list[str]:
        settings = _settings(command.database_url)
        with _queue_runtime(settings) as (repository, _):
            cache = ResearchCache(
                repository=ResearchCacheRepository(settings.database_url, engine=repository.engine),
                settings=settings.research,
            )
            data, ranked = cache.lookup_cached(
                command.query_text,
                domain_priority=command.domain_priority,
            )
        if not ranked:
            return ["Research cache miss."]
        lines = [f"Research cache hit: entries={len(ranked)}"]
        lines.extend(
            f"  {item.score:.3f} {item.entry.query_text} ({item.entry.source_model})"
            for item in ranked
        )
        lines.append(json.dumps(data, indent=2, sort_keys=True, default=str))
        return lines

    def check_url(self, url: str) -> list[str]:
        validated = validate_url_with_policy(url)
        return [f"Allowed: {validated.url} -> {', '.join(validated.resolved_ips)}"]


def _settings(database_url: str | None) -> Settings:
    settings = Settings.from_env(database_url=database_url)
    settings.validate()
    return settings


def _research_generator(settings: Settings) -> HttpResearchGenerator | None:
    if not settings.research.generator_url:
        return None
    return HttpResearchGenerator(
        url=settings.research.generator_url,
        timeout_seconds=settings.research.generator_timeout_seconds,
    )


def _format_ms(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value / 1000:.1f}s"


@contextmanager
def _queue_runtime(settings: Settings) -> Iterator[tuple[QueueRepository, ContentQueue]]:
    repository = QueueRepository(settings.database_url)
    repository.init_schema()
    try:
        yield repository, ContentQueue.from_settings(repository, settings.queue)
    finally:
        repository.close()
