"""Worker concurrency normalization."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from content_pipeline.config import WorkerSettings

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 32
_JOB_TYPE_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")

DEFAULT_JOB_TYPE_CONCURRENCY: dict[str, int] = {
    "refresh_research_cache": 2,
    "keyword_research": 2,
}


def _clamp(value: int) -> int:
    return max(MIN_CONCURRENCY, min(value, MAX_CONCURRENCY))


def _positive_int(raw: object) -> int | None:
    """Parse a limit; None unless it is a positive whole number."""

    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        limit = raw
    elif isinstance(raw, float):
        if not math.isfinite(raw):
            return None
        limit = math.floor(raw)
    elif isinstance(raw, str):
        try:
            limit = int(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return limit if limit > 0 else None


def parse_job_type_concurrency_map(raw: str | None) -> dict[str, int]:
    """Parse ``"type:limit, type:limit"``; malformed entries are dropped silently."""

    if not raw:
        return {}
    parsed: dict[str, int] = {}
    for entry in raw.split(","):
        job_type, _, limit_raw = (part.strip() for part in entry.strip().partition(":"))
        if not job_type or not limit_raw:
            continue
        if not _JOB_TYPE_PATTERN.match(job_type):
            continue
        limit = _positive_int(limit_raw)
        if limit is None:
            continue
        parsed[job_type] = _clamp(limit)
    return parsed


def normalize_worker_concurrency(value: object, fallback: float) -> int:
    """Floor and clamp ``value`` to 1..32, substituting ``fallback`` for non-finite input."""

    candidate = value
    if (
        isinstance(candidate, bool)
        or not isinstance(candidate, (int, float))
        or not math.isfinite(candidate)
    ):
        candidate = fallback
    if math.isnan(candidate):
        return MIN_CONCURRENCY
    if math.isinf(candidate):
        return MAX_CONCURRENCY if candidate > 0 else MIN_CONCURRENCY
    return _clamp(math.floor(candidate))


def normalize_per_job_type_concurrency(
    overrides: Mapping[str, object] | None,
    defaults: Mapping[str, int],
) -> dict[str, int]:
    """Apply valid overrides on top of ``defaults``; invalid ones leave the default in place."""

    merged = dict(defaults)
    for job_type, raw_limit in (overrides or {}).items():
        if not _JOB_TYPE_PATTERN.match(job_type):
            continue
        limit = _positive_int(raw_limit)
        if limit is None:
            continue
        merged[job_type] = _clamp(limit)
    return merged


@dataclass(slots=True, frozen=True)
class ConcurrencyPlan:
    """Advisory concurrency limits for one worker process."""

    default_limit: int
    per_job_type: dict[str, int] = field(default_factory=dict)

    def limit_for(self, job_type: str) -> int:
        return self.per_job_type.get(job_type, self.default_limit)


def build_concurrency_plan(
    settings: WorkerSettings,
    *,
    defaults: Mapping[str, int] = DEFAULT_JOB_TYPE_CONCURRENCY,
) -> ConcurrencyPlan:
    """Combine global default, built-in per-type limits and the override string."""

    default_limit = normalize_worker_concurrency(settings.concurrency, 4)
    per_job_type = normalize_per_job_type_concurrency(
        parse_job_type_concurrency_map(settings.job_type_concurrency),
        {job_type: min(limit, default_limit) for job_type, limit in defaults.items()},
    )
    return ConcurrencyPlan(default_limit=default_limit, per_job_type=per_job_type)
