"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
import redis

from content_pipeline.config import (
    QUEUE_BACKEND_POSTGRES,
    QUEUE_BACKEND_REDIS_DISPATCH,
    QueueSettings,
)
from content_pipeline.queue.accelerator import RedisDispatcher
from content_pipeline.queue.content_queue import ContentQueue
from content_pipeline.queue.repository import QueueRepository


class FakeRedis:
    """In-memory list store with the client surface the dispatcher uses."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = {}
        self.unreachable = False
        self.calls: list[str] = []

    def _check(self, command: str) -> None:
        self.calls.append(command)
        if self.unreachable:
            raise redis.ConnectionError("Error 111 connecting to redis:6379. Connection refused.")

    def rpush(self, name: str, *values: str) -> int:
        self._check("rpush")
        self.lists.setdefault(name, []).extend(values)
        return len(self.lists[name])

    def lpop(self, name: str, count: int | None = None) -> list[str] | str | None:
        self._check("lpop")
        items = self.lists.get(name, [])
        if not items:
            return None
        if count is None:
            return items.pop(0)
        popped, self.lists[name] = items[:count], items[count:]
        return popped

    def ltrim(self, name: str, start: int, end: int) -> bool:
        self._check("ltrim")
        items = self.lists.get(name, [])
        stop = None if end == -1 else end + 1
        self.lists[name] = items[start:stop]
        return True

    def llen(self, name: str) -> int:
        self._check("llen")
        return len(self.lists.get(name, []))

    def ping(self) -> bool:
        self._check("ping")
        return True


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'content_pipeline.db'}"


@pytest.fixture()
def repository(database_url: str) -> Iterator[QueueRepository]:
    repository = QueueRepository(database_url)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


def build_queue(
    repository: QueueRepository,
    *,
    client: FakeRedis | None,
    backend: str = QUEUE_BACKEND_REDIS_DISPATCH,
    event_max_length: int = 2000,
) -> ContentQueue:
    settings = QueueSettings(
        backend=backend,
        redis_url="redis://fake:6379/0" if client is not None else None,
        event_max_length=event_max_length,
    )
    dispatcher = RedisDispatcher.from_settings(settings, client=client)
    return ContentQueue.from_settings(repository, settings, dispatcher=dispatcher)


@pytest.fixture()
def redis_queue(repository: QueueRepository, fake_redis: FakeRedis) -> ContentQueue:
    return build_queue(repository, client=fake_redis)


@pytest.fixture()
def durable_queue(repository: QueueRepository) -> ContentQueue:
    return build_queue(repository, client=None, backend=QUEUE_BACKEND_POSTGRES)
