"""Domain models for the content job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueMode(str, Enum):
    """Statically configured queue backend mode."""

    POSTGRES = "postgres"
    REDIS_DISPATCH = "redis_dispatch"


class QueueBackendName(str, Enum):
    """Backend actually serving dispatch at a point in time."""

    DURABLE = "durable"
    REDIS = "redis"


class RedisStatus(str, Enum):
    DISABLED = "disabled"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass(slots=True)
class QueueJobCreate:
    """Input payload for enqueuing a content job."""

    job_type: str
    job_id: str | None = None
    domain_id: str | None = None
    article_id: str | None = None
    priority: int = 0
    payload: dict[str, Any] = field(default_factory=dict)
    max_attempts: int = 3
    scheduled_for: datetime | None = None


@dataclass(slots=True)
class QueueJobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    job_type: str
    domain_id: str | None
    article_id: str | None
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    status: JobStatus
    attempts: int
    max_attempts: int
    error_message: str | None
    failure_category: str | None
    scheduled_for: datetime | None
    locked_until: datetime | None
    worker_id: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class DispatchEvent:
    """Best-effort enqueue event mirrored into the accelerator event log."""

    job_id: str
    job_type: str
    domain_id: str | None
    article_id: str | None
    priority: int
    scheduled_for: datetime | None
    enqueued_at: datetime

    def to_payload(self) -> dict[str, object]:
        return {
            "id": self.job_id,
            "jobType": self.job_type,
            "domainId": self.domain_id,
            "articleId": self.article_id,
            "priority": self.priority,
            "scheduledFor": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "enqueuedAt": self.enqueued_at.isoformat(),
        }


@dataclass(slots=True)
class QueueBackendHealth:
    """Queue backend health surface consumed by ops tooling."""

    mode: QueueMode
    selected_backend: QueueBackendName
    active_backend: QueueBackendName
    redis_configured: bool
    redis_status: RedisStatus
    event_key: str
    pending_key: str
    pending_depth: int | None
    fallback_reason: str | None
    last_error_at: datetime | None
    last_error_message: str | None

    def to_dict(self) -> dict[str, object]:
        """Serialize with the camelCase names expected by dashboards."""

        return {
            "mode": self.mode.value,
            "selectedBackend": self.selected_backend.value,
            "activeBackend": self.active_backend.value,
            "redisConfigured": self.redis_configured,
            "redisStatus": self.redis_status.value,
            "queueEventKey": self.event_key,
            "queuePendingKey": self.pending_key,
            "pendingDepth": self.pending_depth,
            "fallbackReason": self.fallback_reason,
            "lastErrorAt": self.last_error_at.isoformat() if self.last_error_at else None,
            "lastErrorMessage": self.last_error_message,
        }


@dataclass(slots=True)
class QueueTelemetry:
    """Durable-store telemetry used by stats output and SLO alerting."""

    status_counts: dict[str, int]
    oldest_pending_age_ms: float | None
    error_rate_24h: float
    throughput_per_hour: int
    avg_processing_ms: float | None
    latest_worker_activity_age_ms: float | None

    @property
    def pending(self) -> int:
        return self.status_counts.get(JobStatus.PENDING.value, 0)

    @property
    def total(self) -> int:
        return sum(self.status_counts.values())


class InvalidJobPayload(ValueError):
    """Job payload cannot be processed; retrying will not help."""

    retryable = False
