from __future__ import annotations

import allure
import pytest

from content_pipeline.config import (
    QUEUE_BACKEND_POSTGRES,
    QUEUE_BACKEND_REDIS_DISPATCH,
    ResearchCacheSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Content Queue"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CONTENT_PIPELINE_DATABASE_URL",
        "CONTENT_PIPELINE_QUEUE_BACKEND",
        "CONTENT_PIPELINE_REDIS_URL",
        "CONTENT_PIPELINE_QUEUE_REDIS_EVENT_MAX",
        "CONTENT_PIPELINE_WORKER_CONCURRENCY",
        "CONTENT_PIPELINE_WORKER_JOB_TYPE_CONCURRENCY",
        "CONTENT_PIPELINE_WORKER_ID",
        "CONTENT_PIPELINE_RESEARCH_GENERATOR_URL",
        "CONTENT_PIPELINE_QUEUE_REDIS_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults_select_durable_backend() -> None:
    settings = Settings.from_env()

    assert settings.queue.backend == QUEUE_BACKEND_POSTGRES
    assert settings.queue.redis_url is None
    assert settings.queue.redis_timeout_seconds == 1.5
    assert settings.queue.event_max_length == 2000
    assert settings.redis_dispatch_enabled is False
    assert settings.worker.worker_id is None
    assert settings.research.generator_url is None
    settings.validate()


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTENT_PIPELINE_QUEUE_BACKEND", " Redis ")
    monkeypatch.setenv("CONTENT_PIPELINE_REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("CONTENT_PIPELINE_QUEUE_REDIS_EVENT_MAX", "10")
    monkeypatch.setenv("CONTENT_PIPELINE_WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("CONTENT_PIPELINE_WORKER_JOB_TYPE_CONCURRENCY", "keyword_research:3")
    monkeypatch.setenv("CONTENT_PIPELINE_WORKER_ID", "worker-7")
    monkeypatch.setenv("CONTENT_PIPELINE_RESEARCH_GENERATOR_URL", "http://research:8080/run")

    settings = Settings.from_env(database_url="sqlite:///override.db")

    assert settings.database_url == "sqlite:///override.db"
    assert settings.queue.backend == QUEUE_BACKEND_REDIS_DISPATCH
    assert settings.redis_dispatch_enabled is True
    assert settings.queue.redis_url == "redis://cache:6379/2"
    assert settings.queue.event_max_length == 100
    assert settings.worker.concurrency == 8
    assert settings.worker.job_type_concurrency == "keyword_research:3"
    assert settings.worker.worker_id == "worker-7"
    assert settings.research.generator_url == "http://research:8080/run"


@pytest.mark.parametrize("alias", ["postgres", "durable", "redis", "redis_dispatch"])
def test_backend_aliases_are_accepted(monkeypatch: pytest.MonkeyPatch, alias: str) -> None:
    monkeypatch.setenv("CONTENT_PIPELINE_QUEUE_BACKEND", alias)

    Settings.from_env().validate()


def test_unknown_backend_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTENT_PIPELINE_QUEUE_BACKEND", "kafka")

    with pytest.raises(ValueError, match="Invalid CONTENT_PIPELINE_QUEUE_BACKEND"):
        Settings.from_env()


def test_malformed_numbers_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CONTENT_PIPELINE_WORKER_CONCURRENCY", "many")
    with pytest.raises(ValueError, match="CONTENT_PIPELINE_WORKER_CONCURRENCY"):
        Settings.from_env()

    monkeypatch.delenv("CONTENT_PIPELINE_WORKER_CONCURRENCY")
    monkeypatch.setenv("CONTENT_PIPELINE_QUEUE_REDIS_TIMEOUT_SECONDS", "fast")
    with pytest.raises(ValueError, match="CONTENT_PIPELINE_QUEUE_REDIS_TIMEOUT_SECONDS"):
        Settings.from_env()


def test_validate_rejects_retry_max_below_base() -> None:
    settings = Settings(worker=WorkerSettings(retry_base_seconds=120, retry_max_seconds=60))

    with pytest.raises(ValueError, match="RETRY_MAX_SECONDS"):
        settings.validate()


def test_validate_rejects_non_positive_research_settings() -> None:
    with pytest.raises(ValueError, match="RESEARCH_CACHE_TOP_N"):
        Settings(research=ResearchCacheSettings(top_n=0)).validate()

    with pytest.raises(ValueError, match="RESEARCH_GENERATOR_TIMEOUT_SECONDS"):
        Settings(research=ResearchCacheSettings(generator_timeout_seconds=0)).validate()
