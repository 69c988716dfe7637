"""Create durable content queue table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261012_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "content_queue",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("domain_id", sa.String(), nullable=True),
        sa.Column("article_id", sa.String(), nullable=True),
        sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="3", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_category", sa.String(), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=False), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=False), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_content_queue_status", "content_queue", ["status"], unique=False)
    op.create_index(
        "idx_content_queue_claim",
        "content_queue",
        ["status", "scheduled_for", "priority"],
        unique=False,
    )
    op.create_index("idx_content_queue_job_type", "content_queue", ["job_type"], unique=False)
    op.create_index(
        "idx_content_queue_locked_until",
        "content_queue",
        ["locked_until"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_content_queue_locked_until", table_name="content_queue")
    op.drop_index("idx_content_queue_job_type", table_name="content_queue")
    op.drop_index("idx_content_queue_claim", table_name="content_queue")
    op.drop_index("ix_content_queue_status", table_name="content_queue")
    op.drop_table("content_queue")
