"""Persistence for research cache entries."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from content_pipeline.storage.common import build_engine, to_db_datetime, to_utc_aware_datetime
from content_pipeline.storage.sqlmodel_models import ResearchCacheEntry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CacheEntryView:
    entry_id: str
    query_hash: str
    query_text: str
    result_json: Any
    source_model: str
    fetched_at: datetime
    expires_at: datetime
    domain_priority: int


@dataclass(slots=True)
class CacheEntryWrite:
    query_hash: str
    query_text: str
    result_json: Any
    source_model: str
    fetched_at: datetime
    expires_at: datetime
    domain_priority: int


class ResearchCacheRepository:
    """SQLModel access to the ``research_cache`` table."""

    def __init__(self, database_url: str, *, engine: Engine | None = None) -> None:
        self.database_url = database_url
        self.engine = engine or build_engine(database_url)

    def close(self) -> None:
        self.engine.dispose()

    def find_candidates(
        self,
        *,
        query_hash: str,
        tokens: Sequence[str],
        limit: int,
    ) -> list[CacheEntryView]:
        """The exact-hash row plus the newest rows containing any token, capped at ``limit``."""

        with Session(self.engine) as session:
            rows = list(
                session.exec(
                    select(ResearchCacheEntry).where(ResearchCacheEntry.query_hash == query_hash),
                ).all(),
            )
            remaining = limit - len(rows)
            if tokens and remaining > 0:
                clauses = [
                    col(ResearchCacheEntry.query_text).ilike(f"%{token}%") for token in tokens
                ]
                rows.extend(
                    session.exec(
                        select(ResearchCacheEntry)
                        .where(or_(*clauses))
                        .where(col(ResearchCacheEntry.query_hash) != query_hash)
                        .order_by(col(ResearchCacheEntry.fetched_at).desc())
                        .limit(remaining),
                    ).all(),
                )
        return [_to_view(row) for row in rows]

    def get_by_hash(self, query_hash: str) -> CacheEntryView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ResearchCacheEntry).where(ResearchCacheEntry.query_hash == query_hash),
            ).one_or_none()
        return _to_view(row) if row is not None else None

    def upsert(self, entry: CacheEntryWrite) -> str:
        """Insert or refresh the entry keyed by its query hash; returns the row id."""

        values = {
            "query_text": entry.query_text,
            "result_json": entry.result_json,
            "source_model": entry.source_model,
            "fetched_at": to_db_datetime(entry.fetched_at),
            "expires_at": to_db_datetime(entry.expires_at),
            "domain_priority": entry.domain_priority,
        }
        with Session(self.engine) as session:
            row = ResearchCacheEntry(id=str(uuid4()), query_hash=entry.query_hash, **values)
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
            else:
                return row.id

            session.exec(
                sa_update(ResearchCacheEntry)
                .where(col(ResearchCacheEntry.query_hash) == entry.query_hash)
                .values(**values),
            )
            session.commit()
            existing_id = session.exec(
                select(ResearchCacheEntry.id).where(
                    ResearchCacheEntry.query_hash == entry.query_hash,
                ),
            ).one()
        logger.debug("Refreshed research cache entry %s", existing_id)
        return existing_id


def _to_view(row: ResearchCacheEntry) -> CacheEntryView:
    return CacheEntryView(
        entry_id=row.id,
        query_hash=row.query_hash,
        query_text=row.query_text,
        result_json=row.result_json,
        source_model=row.source_model,
        fetched_at=to_utc_aware_datetime(row.fetched_at),
        expires_at=to_utc_aware_datetime(row.expires_at),
        domain_priority=row.domain_priority,
    )
