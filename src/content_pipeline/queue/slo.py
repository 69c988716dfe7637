"""Queue SLO alerting over a telemetry snapshot."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from content_pipeline.config import SloSettings
from content_pipeline.queue.models import QueueTelemetry


class AlertCode(str, Enum):
    PENDING_AGE = "pending_age"
    ERROR_RATE = "error_rate"
    PENDING_BACKLOG = "pending_backlog"
    WORKER_IDLE = "worker_idle"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True, frozen=True)
class QueueSloThresholds:
    pending_age_ms: float
    error_rate_pct: float
    worker_idle_ms: float
    pending_backlog: int

    @classmethod
    def from_settings(cls, settings: SloSettings) -> QueueSloThresholds:
        return cls(
            pending_age_ms=settings.pending_age_ms,
            error_rate_pct=settings.error_rate_pct,
            worker_idle_ms=settings.worker_idle_ms,
            pending_backlog=settings.pending_backlog,
        )


@dataclass(slots=True, frozen=True)
class QueueSloSnapshot:
    """Point-in-time queue numbers; None ages mean "nothing to measure"."""

    oldest_pending_age_ms: float | None
    error_rate_24h: float
    pending: int
    latest_worker_activity_age_ms: float | None


@dataclass(slots=True, frozen=True)
class QueueSloAlert:
    code: AlertCode
    severity: AlertSeverity
    message: str
    value: float
    threshold: float


def _finite_or_none(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return max(0.0, float(value))


def _finite_or_zero(value: float) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return max(0.0, float(value))


def _severity(value: float, threshold: float) -> AlertSeverity:
    return AlertSeverity.CRITICAL if value > threshold * 2 else AlertSeverity.WARNING


def build_queue_slo_alerts(
    snapshot: QueueSloSnapshot,
    thresholds: QueueSloThresholds,
) -> list[QueueSloAlert]:
    """Return alerts in fixed order: pending age, error rate, backlog, idle worker."""

    oldest_pending_age_ms = _finite_or_none(snapshot.oldest_pending_age_ms)
    error_rate = _finite_or_zero(snapshot.error_rate_24h)
    pending = math.floor(_finite_or_zero(snapshot.pending))
    worker_idle_ms = _finite_or_none(snapshot.latest_worker_activity_age_ms)

    alerts: list[QueueSloAlert] = []
    if oldest_pending_age_ms is not None and oldest_pending_age_ms > thresholds.pending_age_ms:
        alerts.append(
            QueueSloAlert(
                code=AlertCode.PENDING_AGE,
                severity=_severity(oldest_pending_age_ms, thresholds.pending_age_ms),
                message="Oldest pending job age exceeded SLO threshold",
                value=oldest_pending_age_ms,
                threshold=thresholds.pending_age_ms,
            ),
        )
    if error_rate > thresholds.error_rate_pct:
        alerts.append(
            QueueSloAlert(
                code=AlertCode.ERROR_RATE,
                severity=_severity(error_rate, thresholds.error_rate_pct),
                message="24h queue error rate exceeded SLO threshold",
                value=error_rate,
                threshold=thresholds.error_rate_pct,
            ),
        )
    if pending > thresholds.pending_backlog:
        alerts.append(
            QueueSloAlert(
                code=AlertCode.PENDING_BACKLOG,
                severity=_severity(pending, thresholds.pending_backlog),
                message="Pending queue backlog exceeded SLO threshold",
                value=pending,
                threshold=thresholds.pending_backlog,
            ),
        )
    # An idle worker with an empty queue is normal.
    if pending > 0 and worker_idle_ms is not None and worker_idle_ms > thresholds.worker_idle_ms:
        alerts.append(
            QueueSloAlert(
                code=AlertCode.WORKER_IDLE,
                severity=AlertSeverity.CRITICAL,
                message="Worker idle while queue has pending jobs",
                value=worker_idle_ms,
                threshold=thresholds.worker_idle_ms,
            ),
        )
    return alerts


def snapshot_from_telemetry(telemetry: QueueTelemetry) -> QueueSloSnapshot:
    return QueueSloSnapshot(
        oldest_pending_age_ms=telemetry.oldest_pending_age_ms,
        error_rate_24h=telemetry.error_rate_24h,
        pending=telemetry.pending,
        latest_worker_activity_age_ms=telemetry.latest_worker_activity_age_ms,
    )


def render_alert_lines(alerts: list[QueueSloAlert]) -> list[str]:
    if not alerts:
        return ["Queue SLO: ok"]
    return [
        f"[{alert.severity.value}] {alert.code.value}: {alert.message} "
        f"(value={alert.value:g}, threshold={alert.threshold:g})"
        for alert in alerts
    ]
