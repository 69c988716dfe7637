"""Redis dispatch accelerator: a best-effort mirror of ready job ids."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import redis

from content_pipeline.config import QueueSettings
from content_pipeline.queue.models import DispatchEvent
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_DEQUEUE_IDS = 200


class RedisClient(Protocol):
    """Subset of the redis-py client surface used for dispatch."""

    def rpush(self, name: str, *values: str) -> Any: ...

    def lpop(self, name: str, count: int | None = None) -> Any: ...

    def ltrim(self, name: str, start: int, end: int) -> Any: ...

    def llen(self, name: str) -> Any: ...

    def ping(self) -> Any: ...


@dataclass(slots=True, frozen=True)
class AcceleratorErrorState:
    """Snapshot of the last accelerator failure."""

    fallback_reason: str | None
    last_error_at: datetime | None
    last_error_message: str | None


def build_redis_client(settings: QueueSettings) -> RedisClient | None:
    """Create a time-bounded Redis client, or None when no URL is configured."""

    if not settings.redis_url:
        return None
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_timeout_seconds,
        socket_connect_timeout=settings.redis_timeout_seconds,
    )


class RedisDispatcher:
    """Explicit accelerator handle shared by enqueuers and workers.

    Every call is bounded by the client's socket timeouts. Failures never escape:
    they are logged and recorded as the current fallback reason, which the next
    successful call clears.
    """

    def __init__(
        self,
        *,
        client: RedisClient | None,
        event_key: str,
        pending_key: str,
        event_max_length: int,
    ) -> None:
        self.client = client
        self.event_key = event_key
        self.pending_key = pending_key
        self.event_max_length = event_max_length
        self._lock = threading.Lock()
        self._fallback_reason: str | None = None
        self._last_error_at: datetime | None = None
        self._last_error_message: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: QueueSettings,
        *,
        client: RedisClient | None = None,
    ) -> RedisDispatcher:
        return cls(
            client=client if client is not None else build_redis_client(settings),
            event_key=settings.event_key,
            pending_key=settings.pending_key,
            event_max_length=settings.event_max_length,
        )

    @property
    def configured(self) -> bool:
        return self.client is not None

    def error_state(self) -> AcceleratorErrorState:
        with self._lock:
            return AcceleratorErrorState(
                fallback_reason=self._fallback_reason,
                last_error_at=self._last_error_at,
                last_error_message=self._last_error_message,
            )

    def record_error(self, reason: str, error: BaseException | str | None = None) -> None:
        message = str(error) if error is not None else None
        with self._lock:
            self._fallback_reason = reason
            self._last_error_at = utc_now()
            self._last_error_message = message
        logger.warning("%s: %s", reason, message or "no details")

    def clear_error(self) -> None:
        with self._lock:
            self._fallback_reason = None
            self._last_error_at = None
            self._last_error_message = None

    def publish(self, ready_ids: Sequence[str], events: Sequence[DispatchEvent]) -> bool:
        """Push ready ids and append enqueue events to the bounded log."""

        if self.client is None:
            self.record_error("Redis publish skipped; accelerator URL is not configured")
            return False
        try:
            if ready_ids:
                self.client.rpush(self.pending_key, *ready_ids)
            if events:
                payloads = [json.dumps(event.to_payload()) for event in events]
                self.client.rpush(self.event_key, *payloads)
                self.client.ltrim(self.event_key, -self.event_max_length, -1)
        except redis.RedisError as error:
            self.record_error("Redis publish failed; using durable enqueue only", error)
            return False
        self.clear_error()
        return True

    def pop(self, max_ids: int) -> list[str]:
        """Pop up to `max_ids` ready ids (clamped to 1..200); [] on any failure."""

        if self.client is None:
            self.record_error("Redis dequeue skipped; accelerator URL is not configured")
            return []
        count = max(1, min(int(max_ids), MAX_DEQUEUE_IDS))
        try:
            raw = self.client.lpop(self.pending_key, count)
        except redis.RedisError as error:
            self.record_error(
                "Redis dequeue failed; workers will fall back to durable scanning",
                error,
            )
            return []
        self.clear_error()
        return _normalize_id_list(raw)

    def push(self, job_ids: Sequence[str]) -> bool:
        """Return ids to the tail of the pending list."""

        if not job_ids:
            return True
        if self.client is None:
            self.record_error("Redis requeue skipped; accelerator URL is not configured")
            return False
        try:
            self.client.rpush(self.pending_key, *job_ids)
        except redis.RedisError as error:
            self.record_error(
                "Redis requeue failed; ids will be recovered by durable scanning",
                error,
            )
            return False
        self.clear_error()
        return True

    def probe(self) -> int | None:
        """Ping and read the pending depth; None when the accelerator is unreachable."""

        if self.client is None:
            return None
        try:
            self.client.ping()
            depth = self.client.llen(self.pending_key)
        except redis.RedisError as error:
            self.record_error(
                "Redis health check failed; workers will fall back to durable scanning",
                error,
            )
            return None
        return int(depth)


def _normalize_id_list(raw: object) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        values = list(raw)
    else:
        values = [raw]
    ids: list[str] = []
    for value in values:
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        if isinstance(value, str) and value:
            ids.append(value)
    return ids
