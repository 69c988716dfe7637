"""Create research cache table keyed by normalized query hash."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0002"
down_revision = "20261012_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "research_cache",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("query_hash", sa.String(), nullable=False),
        sa.Column("query_text", sa.Text(), nullable=False),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("source_model", sa.String(), nullable=False),
        sa.Column("fetched_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("domain_priority", sa.Integer(), server_default="0", nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("query_hash", name="uq_research_cache_query_hash"),
    )
    op.create_index("ix_research_cache_query_hash", "research_cache", ["query_hash"], unique=False)
    op.create_index("ix_research_cache_fetched_at", "research_cache", ["fetched_at"], unique=False)
    op.create_index("ix_research_cache_expires_at", "research_cache", ["expires_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_research_cache_expires_at", table_name="research_cache")
    op.drop_index("ix_research_cache_fetched_at", table_name="research_cache")
    op.drop_index("ix_research_cache_query_hash", table_name="research_cache")
    op.drop_table("research_cache")
