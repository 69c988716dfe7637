"""Relevance-weighted research cache in front of a live research generator."""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from content_pipeline.config import ResearchCacheSettings
from content_pipeline.queue.content_queue import ContentQueue
from content_pipeline.queue.models import InvalidJobPayload, QueueJobCreate, QueueJobView
from content_pipeline.research.repository import (
    CacheEntryView,
    CacheEntryWrite,
    ResearchCacheRepository,
)
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

REFRESH_JOB_TYPE = "refresh_research_cache"
REFRESH_JOB_PRIORITY = 1
CACHED_MODEL = "cachedKnowledgeBase"
RESEARCH_TASK = "research"
RESEARCH_CACHE_PROMPT_VERSION = "research-cache.v1"
RESEARCH_CACHE_ROUTING_VERSION = "cachedKnowledgeBase.v1"
MAX_QUERY_TOKENS = 8
MIN_TOKEN_LENGTH = 3
RELEVANCE_WEIGHT = 0.6
RECENCY_WEIGHT = 0.3
PRIORITY_WEIGHT = 0.1

_WHITESPACE = re.compile(r"\s+")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"


@dataclass(slots=True)
class ResearchGeneration:
    """Live research output returned by a generator."""

    data: Any
    model: str
    resolved_model: str | None = None
    model_key: str = RESEARCH_TASK
    prompt_version: str = ""
    routing_version: str = ""
    fallback_used: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    duration_ms: float = 0.0


class ResearchGenerator(Protocol):
    def generate_json(self, task: str, prompt: str) -> ResearchGeneration: ...


@dataclass(slots=True)
class ResearchResult:
    data: Any
    model_key: str
    model: str
    resolved_model: str
    prompt_version: str
    routing_version: str
    fallback_used: bool
    input_tokens: int
    output_tokens: int
    cost: float
    duration_ms: float
    cache_status: CacheStatus
    cache_entries: int


@dataclass(slots=True, frozen=True)
class RankedEntry:
    entry: CacheEntryView
    score: float


def normalize_query(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip().lower())


def query_hash_for(text: str) -> str:
    return hashlib.sha256(normalize_query(text).encode("utf-8")).hexdigest()


def tokenize_query(text: str) -> list[str]:
    """Up to eight alphanumeric tokens of three or more characters."""

    tokens = [
        token
        for token in _TOKEN_SPLIT.split(normalize_query(text))
        if len(token) >= MIN_TOKEN_LENGTH
    ]
    return tokens[:MAX_QUERY_TOKENS]


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def priority_fit(entry_priority: int, required_priority: int) -> float:
    if required_priority <= 0:
        return _clamp(entry_priority / 10)
    if entry_priority >= required_priority:
        return 1.0
    return _clamp(entry_priority / required_priority)


def score_cache_entry(  # noqa: PLR0913
    entry: CacheEntryView,
    *,
    query_hash: str,
    tokens: list[str],
    required_priority: int,
    staleness_window: timedelta,
    now: datetime,
) -> float:
    """0.6 relevance + 0.3 recency + 0.1 priority fit."""

    if entry.query_hash == query_hash:
        relevance = 1.0
    elif not tokens:
        relevance = 0.0
    else:
        text = normalize_query(entry.query_text)
        relevance = sum(1 for token in tokens if token in text) / len(tokens)
    age_seconds = max(0.0, (now - entry.fetched_at).total_seconds())
    window_seconds = staleness_window.total_seconds()
    recency = _clamp(1 - age_seconds / window_seconds) if window_seconds > 0 else 0.0
    return (
        RELEVANCE_WEIGHT * relevance
        + RECENCY_WEIGHT * recency
        + PRIORITY_WEIGHT * priority_fit(entry.domain_priority, required_priority)
    )


def _dedupe_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def merge_research_values(values: list[Any]) -> Any:
    """Merge cached results given in score order.

    Lists are unioned with first-seen order, mappings merge per key
    recursively, anything else resolves to the first value.
    """

    if not values:
        return {}
    if len(values) == 1:
        return values[0]
    if all(isinstance(value, list) for value in values):
        seen: set[str] = set()
        merged_list: list[Any] = []
        for value in values:
            for item in value:
                key = _dedupe_key(item)
                if key not in seen:
                    seen.add(key)
                    merged_list.append(item)
        return merged_list
    if all(isinstance(value, dict) for value in values):
        merged: dict[str, Any] = {}
        keys: list[str] = []
        for value in values:
            keys.extend(key for key in value if key not in keys)
        for key in keys:
            present = [value[key] for value in values if value.get(key) is not None]
            if present:
                merged[key] = merge_research_values(present)
        return merged
    return values[0]


def _as_whole_number(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return math.floor(value)


class ResearchCache:
    """Serves research from scored cache entries and falls back to live generation."""

    def __init__(
        self,
        *,
        repository: ResearchCacheRepository,
        settings: ResearchCacheSettings,
        generator: ResearchGenerator | None = None,
        queue: ContentQueue | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.generator = generator
        self.queue = queue

    def rank_entries(
        self,
        query_text: str,
        *,
        domain_priority: int = 0,
        staleness_hours: int | None = None,
        top_n: int | None = None,
        now: datetime | None = None,
    ) -> list[RankedEntry]:
        """Fresh candidate rows, scored and sorted deterministically."""

        current = now or utc_now()
        query_hash = query_hash_for(query_text)
        tokens = tokenize_query(query_text)
        staleness_window = timedelta(hours=staleness_hours or self.settings.staleness_hours)
        stale_before = current - staleness_window

        candidates = self.repository.find_candidates(
            query_hash=query_hash,
            tokens=tokens,
            limit=self.settings.max_scan_rows,
        )
        fresh = [
            entry
            for entry in candidates
            if entry.expires_at > current and entry.fetched_at >= stale_before
        ]
        if not fresh:
            return []

        pool = fresh
        if domain_priority > 0:
            preferred = [entry for entry in fresh if entry.domain_priority >= domain_priority]
            pool = preferred or fresh

        ranked = [
            RankedEntry(
                entry=entry,
                score=score_cache_entry(
                    entry,
                    query_hash=query_hash,
                    tokens=tokens,
                    required_priority=domain_priority,
                    staleness_window=staleness_window,
                    now=current,
                ),
            )
            for entry in pool
        ]
        ranked.sort(
            key=lambda item: (-item.score, -item.entry.fetched_at.timestamp(), item.entry.entry_id),
        )
        return ranked[: top_n or self.settings.top_n]

    def lookup_cached(
        self,
        query_text: str,
        *,
        domain_priority: int = 0,
    ) -> tuple[Any, list[RankedEntry]]:
        """Merged cached data (None on miss) without calling the live generator."""

        ranked = self.rank_entries(query_text, domain_priority=domain_priority)
        if not ranked:
            return None, []
        return merge_research_values([item.entry.result_json for item in ranked]), ranked

    def upsert_entry(  # noqa: PLR0913
        self,
        query_text: str,
        result_json: Any,
        source_model: str,
        *,
        domain_priority: int = 0,
        ttl_hours: int | None = None,
        now: datetime | None = None,
    ) -> str:
        fetched_at = now or utc_now()
        normalized = normalize_query(query_text)
        return self.repository.upsert(
            CacheEntryWrite(
                query_hash=query_hash_for(normalized),
                query_text=normalized,
                result_json=result_json,
                source_model=source_model,
                fetched_at=fetched_at,
                expires_at=fetched_at + timedelta(hours=ttl_hours or self.settings.ttl_hours),
                domain_priority=max(0, math.floor(domain_priority)),
            ),
        )

    def generate_with_cache(  # noqa: PLR0913
        self,
        *,
        query_text: str,
        prompt: str,
        empty_result: Any,
        domain_priority: int = 0,
        staleness_hours: int | None = None,
        ttl_hours: int | None = None,
        top_n: int | None = None,
        queue_refresh_on_miss: bool = True,
    ) -> ResearchResult:
        """Cached research when fresh entries exist, otherwise live research.

        A failing live call never raises: the caller's ``empty_result`` is
        returned and a refresh job is queued best-effort.
        """

        started = time.monotonic()
        priority = max(0, math.floor(domain_priority))
        ranked = self.rank_entries(
            query_text,
            domain_priority=priority,
            staleness_hours=staleness_hours,
            top_n=top_n,
        )
        if ranked:
            return self._cached_result(
                data=merge_research_values([item.entry.result_json for item in ranked]),
                started=started,
                cache_status=CacheStatus.HIT,
                cache_entries=len(ranked),
                fallback_used=False,
            )

        try:
            live = self._generate(prompt)
        except Exception as error:  # noqa: BLE001
            logger.error("Research cache miss and live research failed: %s", error)
            if queue_refresh_on_miss:
                self._queue_refresh_best_effort(
                    query_text=query_text,
                    prompt=prompt,
                    domain_priority=priority,
                    ttl_hours=ttl_hours,
                )
            return self._cached_result(
                data=empty_result,
                started=started,
                cache_status=CacheStatus.MISS,
                cache_entries=0,
                fallback_used=True,
            )

        self.upsert_entry(
            query_text,
            live.data,
            live.resolved_model or live.model,
            domain_priority=priority,
            ttl_hours=ttl_hours,
        )
        return ResearchResult(
            data=live.data,
            model_key=live.model_key,
            model=live.model,
            resolved_model=live.resolved_model or live.model,
            prompt_version=live.prompt_version,
            routing_version=live.routing_version,
            fallback_used=live.fallback_used,
            input_tokens=live.input_tokens,
            output_tokens=live.output_tokens,
            cost=live.cost,
            duration_ms=live.duration_ms,
            cache_status=CacheStatus.MISS,
            cache_entries=0,
        )

    def queue_refresh_job(
        self,
        *,
        query_text: str,
        prompt: str,
        domain_priority: int = 0,
        ttl_hours: int | None = None,
    ) -> str:
        if self.queue is None:
            raise RuntimeError("Research cache has no content queue for refresh jobs.")
        return self.queue.enqueue(
            QueueJobCreate(
                job_type=REFRESH_JOB_TYPE,
                priority=REFRESH_JOB_PRIORITY,
                payload={
                    "queryText": query_text,
                    "prompt": prompt,
                    "domainPriority": domain_priority,
                    "ttlHours": ttl_hours or self.settings.ttl_hours,
                },
            ),
        )

    def refresh_entry(self, payload: object) -> dict[str, Any]:
        """Run live research for a refresh payload and store the result."""

        if not isinstance(payload, dict):
            raise InvalidJobPayload("Invalid refresh payload")
        query_text = payload.get("queryText")
        prompt = payload.get("prompt")
        query_text = query_text.strip() if isinstance(query_text, str) else ""
        prompt = prompt if isinstance(prompt, str) else ""
        if not query_text or not prompt:
            raise InvalidJobPayload(f"{REFRESH_JOB_TYPE} requires queryText and prompt")

        priority = _as_whole_number(payload.get("domainPriority"))
        ttl_hours = _as_whole_number(payload.get("ttlHours"))
        domain_priority = max(0, priority) if priority is not None else 0
        ttl = max(1, ttl_hours) if ttl_hours is not None else self.settings.ttl_hours

        live = self._generate(prompt)
        source_model = live.resolved_model or live.model
        entry_id = self.upsert_entry(
            query_text,
            live.data,
            source_model,
            domain_priority=domain_priority,
            ttl_hours=ttl,
        )
        return {
            "entryId": entry_id,
            "queryHash": query_hash_for(query_text),
            "sourceModel": source_model,
        }

    def handle_refresh_job(self, job: QueueJobView) -> dict[str, Any]:
        """Worker handler for ``refresh_research_cache`` jobs."""

        return self.refresh_entry(job.payload)

    def _generate(self, prompt: str) -> ResearchGeneration:
        if self.generator is None:
            raise RuntimeError("No research generator configured.")
        return self.generator.generate_json(RESEARCH_TASK, prompt)

    def _queue_refresh_best_effort(
        self,
        *,
        query_text: str,
        prompt: str,
        domain_priority: int,
        ttl_hours: int | None,
    ) -> None:
        try:
            job_id = self.queue_refresh_job(
                query_text=query_text,
                prompt=prompt,
                domain_priority=domain_priority,
                ttl_hours=ttl_hours,
            )
        except Exception:
            logger.exception("Failed to queue %s job", REFRESH_JOB_TYPE)
            return
        logger.info("Queued %s job %s", REFRESH_JOB_TYPE, job_id)

    @staticmethod
    def _cached_result(
        *,
        data: Any,
        started: float,
        cache_status: CacheStatus,
        cache_entries: int,
        fallback_used: bool,
    ) -> ResearchResult:
        return ResearchResult(
            data=data,
            model_key=RESEARCH_TASK,
            model=CACHED_MODEL,
            resolved_model=CACHED_MODEL,
            prompt_version=RESEARCH_CACHE_PROMPT_VERSION,
            routing_version=RESEARCH_CACHE_ROUTING_VERSION,
            fallback_used=fallback_used,
            input_tokens=0,
            output_tokens=0,
            cost=0.0,
            duration_ms=(time.monotonic() - started) * 1000,
            cache_status=cache_status,
            cache_entries=cache_entries,
        )
