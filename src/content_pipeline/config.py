"""Runtime configuration for the job queue, workers and research cache."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

QUEUE_BACKEND_POSTGRES = "postgres"
QUEUE_BACKEND_REDIS_DISPATCH = "redis_dispatch"
_QUEUE_BACKEND_ALIASES = {
    "postgres": QUEUE_BACKEND_POSTGRES,
    "durable": QUEUE_BACKEND_POSTGRES,
    "redis": QUEUE_BACKEND_REDIS_DISPATCH,
    "redis_dispatch": QUEUE_BACKEND_REDIS_DISPATCH,
}
MIN_EVENT_MAX_LENGTH = 100


@dataclass(slots=True)
class QueueSettings:
    """Durable queue and Redis dispatch accelerator settings."""

    backend: str = QUEUE_BACKEND_POSTGRES
    redis_url: str | None = None
    event_key: str = "content-pipeline:content-queue:events"
    pending_key: str = "content-pipeline:content-queue:pending"
    event_max_length: int = 2000
    redis_timeout_seconds: float = 1.5
    ready_tolerance_seconds: float = 1.0


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker runtime settings."""

    concurrency: int = 4
    job_type_concurrency: str = ""
    poll_interval_seconds: float = 5.0
    lock_seconds: int = 300
    retry_base_seconds: int = 60
    retry_max_seconds: int = 1800
    worker_id: str | None = None


@dataclass(slots=True)
class SloSettings:
    """Queue SLO alert thresholds."""

    pending_age_ms: float = 900_000
    error_rate_pct: float = 5.0
    worker_idle_ms: float = 300_000
    pending_backlog: int = 100


@dataclass(slots=True)
class ResearchCacheSettings:
    """Research cache freshness and ranking settings."""

    ttl_hours: int = 72
    staleness_hours: int = 72
    top_n: int = 5
    max_scan_rows: int = 50
    generator_url: str | None = None
    generator_timeout_seconds: float = 60.0


@dataclass(slots=True)
class FetchSettings:
    """Outbound fetch guard settings."""

    timeout_seconds: float = 10.0
    max_redirects: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    database_url: str = "sqlite:///.content_pipeline.db"
    queue: QueueSettings = field(default_factory=QueueSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    slo: SloSettings = field(default_factory=SloSettings)
    research: ResearchCacheSettings = field(default_factory=ResearchCacheSettings)
    fetch: FetchSettings = field(default_factory=FetchSettings)

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            database_url=database_url
            or os.getenv("CONTENT_PIPELINE_DATABASE_URL", "sqlite:///.content_pipeline.db"),
            queue=QueueSettings(
                backend=_queue_backend(os.getenv("CONTENT_PIPELINE_QUEUE_BACKEND", "postgres")),
                redis_url=os.getenv("CONTENT_PIPELINE_REDIS_URL", "").strip() or None,
                event_key=os.getenv(
                    "CONTENT_PIPELINE_QUEUE_REDIS_EVENT_KEY",
                    "content-pipeline:content-queue:events",
                ),
                pending_key=os.getenv(
                    "CONTENT_PIPELINE_QUEUE_REDIS_PENDING_KEY",
                    "content-pipeline:content-queue:pending",
                ),
                event_max_length=max(
                    MIN_EVENT_MAX_LENGTH,
                    _env_int("CONTENT_PIPELINE_QUEUE_REDIS_EVENT_MAX", 2000),
                ),
                redis_timeout_seconds=_env_float(
                    "CONTENT_PIPELINE_QUEUE_REDIS_TIMEOUT_SECONDS",
                    1.5,
                ),
                ready_tolerance_seconds=_env_float(
                    "CONTENT_PIPELINE_QUEUE_READY_TOLERANCE_SECONDS",
                    1.0,
                ),
            ),
            worker=WorkerSettings(
                concurrency=_env_int("CONTENT_PIPELINE_WORKER_CONCURRENCY", 4),
                job_type_concurrency=os.getenv("CONTENT_PIPELINE_WORKER_JOB_TYPE_CONCURRENCY", ""),
                poll_interval_seconds=_env_float(
                    "CONTENT_PIPELINE_WORKER_POLL_INTERVAL_SECONDS",
                    5.0,
                ),
                lock_seconds=_env_int("CONTENT_PIPELINE_WORKER_LOCK_SECONDS", 300),
                retry_base_seconds=_env_int("CONTENT_PIPELINE_WORKER_RETRY_BASE_SECONDS", 60),
                retry_max_seconds=_env_int("CONTENT_PIPELINE_WORKER_RETRY_MAX_SECONDS", 1800),
                worker_id=os.getenv("CONTENT_PIPELINE_WORKER_ID", "").strip() or None,
            ),
            slo=SloSettings(
                pending_age_ms=_env_float("CONTENT_PIPELINE_SLO_PENDING_AGE_MS", 900_000),
                error_rate_pct=_env_float("CONTENT_PIPELINE_SLO_ERROR_RATE_PCT", 5.0),
                worker_idle_ms=_env_float("CONTENT_PIPELINE_SLO_WORKER_IDLE_MS", 300_000),
                pending_backlog=_env_int("CONTENT_PIPELINE_SLO_PENDING_BACKLOG", 100),
            ),
            research=ResearchCacheSettings(
                ttl_hours=_env_int("CONTENT_PIPELINE_RESEARCH_CACHE_TTL_HOURS", 72),
                staleness_hours=_env_int("CONTENT_PIPELINE_RESEARCH_CACHE_STALENESS_HOURS", 72),
                top_n=_env_int("CONTENT_PIPELINE_RESEARCH_CACHE_TOP_N", 5),
                max_scan_rows=_env_int("CONTENT_PIPELINE_RESEARCH_CACHE_MAX_SCAN_ROWS", 50),
                generator_url=(
                    os.getenv("CONTENT_PIPELINE_RESEARCH_GENERATOR_URL", "").strip() or None
                ),
                generator_timeout_seconds=_env_float(
                    "CONTENT_PIPELINE_RESEARCH_GENERATOR_TIMEOUT_SECONDS",
                    60.0,
                ),
            ),
            fetch=FetchSettings(
                timeout_seconds=_env_float("CONTENT_PIPELINE_FETCH_TIMEOUT_SECONDS", 10.0),
                max_redirects=_env_int("CONTENT_PIPELINE_FETCH_MAX_REDIRECTS", 3),
            ),
        )

    @property
    def redis_dispatch_enabled(self) -> bool:
        return self.queue.backend == QUEUE_BACKEND_REDIS_DISPATCH

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.queue.backend not in {QUEUE_BACKEND_POSTGRES, QUEUE_BACKEND_REDIS_DISPATCH}:
            raise ValueError(f"Unsupported CONTENT_PIPELINE_QUEUE_BACKEND: {self.queue.backend!r}")
        if self.queue.redis_timeout_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_QUEUE_REDIS_TIMEOUT_SECONDS must be > 0.")
        if self.queue.ready_tolerance_seconds < 0:
            raise ValueError("CONTENT_PIPELINE_QUEUE_READY_TOLERANCE_SECONDS must be >= 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("CONTENT_PIPELINE_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.worker.lock_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_WORKER_LOCK_SECONDS must be > 0.")
        if self.worker.retry_base_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_WORKER_RETRY_BASE_SECONDS must be > 0.")
        if self.worker.retry_max_seconds < self.worker.retry_base_seconds:
            raise ValueError(
                "CONTENT_PIPELINE_WORKER_RETRY_MAX_SECONDS must be >= "
                "CONTENT_PIPELINE_WORKER_RETRY_BASE_SECONDS.",
            )
        if self.research.ttl_hours <= 0:
            raise ValueError("CONTENT_PIPELINE_RESEARCH_CACHE_TTL_HOURS must be > 0.")
        if self.research.staleness_hours <= 0:
            raise ValueError("CONTENT_PIPELINE_RESEARCH_CACHE_STALENESS_HOURS must be > 0.")
        if self.research.top_n <= 0:
            raise ValueError("CONTENT_PIPELINE_RESEARCH_CACHE_TOP_N must be > 0.")
        if self.research.max_scan_rows <= 0:
            raise ValueError("CONTENT_PIPELINE_RESEARCH_CACHE_MAX_SCAN_ROWS must be > 0.")
        if self.research.generator_timeout_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_RESEARCH_GENERATOR_TIMEOUT_SECONDS must be > 0.")
        if self.fetch.timeout_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_FETCH_TIMEOUT_SECONDS must be > 0.")
        if self.fetch.max_redirects < 0:
            raise ValueError("CONTENT_PIPELINE_FETCH_MAX_REDIRECTS must be >= 0.")


def _queue_backend(raw: str) -> str:
    normalized = raw.strip().lower()
    backend = _QUEUE_BACKEND_ALIASES.get(normalized)
    if backend is None:
        raise ValueError(
            f"Invalid CONTENT_PIPELINE_QUEUE_BACKEND: {raw!r}. "
            "Expected 'postgres' or 'redis_dispatch'.",
        )
    return backend


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error
