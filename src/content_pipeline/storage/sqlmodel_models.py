"""SQLModel ORM tables for the job queue and research cache."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, Index, Integer, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class ContentQueueJob(SQLModel, table=True):
    __tablename__ = "content_queue"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_content_queue_claim", "status", "scheduled_for", "priority"),
        Index("idx_content_queue_job_type", "job_type"),
        Index("idx_content_queue_locked_until", "locked_until"),
    )

    id: str = Field(primary_key=True)
    job_type: str
    domain_id: str | None = None
    article_id: str | None = None
    priority: int = Field(default=0, sa_column=Column(Integer, nullable=False, server_default="0"))
    payload: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))
    status: str = Field(index=True)
    attempts: int = 0
    max_attempts: int = 3
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_category: str | None = None
    scheduled_for: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=False), nullable=True),
    )
    locked_until: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=False), nullable=True),
    )
    worker_id: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=False)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=False)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=False), nullable=False))


class ResearchCacheEntry(SQLModel, table=True):
    __tablename__ = "research_cache"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("query_hash", name="uq_research_cache_query_hash"),)

    id: str = Field(primary_key=True)
    query_hash: str = Field(index=True)
    query_text: str = Field(sa_column=Column(Text, nullable=False))
    result_json: Any = Field(default=None, sa_column=Column(JSON, nullable=True))
    source_model: str
    fetched_at: datetime = Field(
        sa_column=Column(DateTime(timezone=False), index=True, nullable=False),
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=False), index=True, nullable=False),
    )
    domain_priority: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default="0"),
    )
