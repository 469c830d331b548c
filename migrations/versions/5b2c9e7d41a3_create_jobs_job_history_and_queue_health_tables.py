"""create jobs, job_history and queue_health tables

Revision ID: 5b2c9e7d41a3
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5b2c9e7d41a3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("job_type", sa.String(64), nullable=False, comment="JobType value"),
        sa.Column(
            "queue_name", sa.String(128), nullable=False, comment="Resolved physical queue"
        ),
        sa.Column(
            "routing_key",
            sa.String(255),
            nullable=False,
            comment="Exact routing key, priority suffixed",
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("data", sa.JSON, nullable=False, comment="Caller payload, stored verbatim"),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            server_default="queued",
            comment="queued|processing|completed|failed",
        ),
        sa.Column("progress", sa.JSON, nullable=True),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column(
            "priority",
            sa.String(16),
            nullable=False,
            server_default="NORMAL",
            comment="LOW|NORMAL|HIGH|CRITICAL",
        ),
        sa.Column("result", sa.JSON, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("parent_job_id", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("queue_wait_time", sa.Integer, nullable=True),
        sa.Column("processing_time", sa.Integer, nullable=True),
        sa.CheckConstraint(
            "status IN ('queued', 'processing', 'completed', 'failed')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="jobs_attempts_check"
        ),
    )

    # Stats counts by (queue, status); dashboards list a workspace's jobs
    op.create_index("ix_jobs_queue_status", "jobs", ["queue_name", "status"])
    op.create_index(
        "ix_jobs_workspace_created", "jobs", ["workspace_id", "created_at"]
    )

    op.create_table(
        "job_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("job_id", sa.String(64), nullable=False),
        sa.Column("workspace_id", sa.String(64), nullable=False),
        sa.Column("event", sa.String(32), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("progress", sa.JSON, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("processing_time", sa.Integer, nullable=True),
        sa.Column("queue_wait_time", sa.Integer, nullable=True),
        sa.Column("attempt", sa.Integer, nullable=True),
        sa.Column("previous_status", sa.String(16), nullable=True),
        sa.Column("new_status", sa.String(16), nullable=True),
        sa.CheckConstraint(
            "event IN ('created', 'started', 'progress', 'completed', 'failed', "
            "'retry', 'batch_initiated')",
            name="job_history_event_check",
        ),
    )
    op.create_index("ix_job_history_job_id", "job_history", ["job_id"])
    op.create_index(
        "ix_job_history_job_timestamp", "job_history", ["job_id", "timestamp"]
    )
    op.create_index(
        "ix_job_history_workspace_timestamp",
        "job_history",
        ["workspace_id", "timestamp"],
    )

    op.create_table(
        "queue_health",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("queue_name", sa.String(128), nullable=False),
        sa.Column("is_healthy", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("issues", sa.JSON, nullable=False),
        sa.Column("waiting", sa.Integer, nullable=False, server_default="0"),
        sa.Column("active", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "processing_rate",
            sa.Float,
            nullable=False,
            server_default="0",
            comment="Completions per minute",
        ),
        sa.Column(
            "average_wait_time", sa.Float, nullable=False, server_default="0", comment="ms"
        ),
        sa.Column(
            "error_rate",
            sa.Float,
            nullable=False,
            server_default="0",
            comment="failed / finished",
        ),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_queue_health_queue_timestamp", "queue_health", ["queue_name", "timestamp"]
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_queue_health_queue_timestamp", table_name="queue_health")
    op.drop_table("queue_health")

    op.drop_index("ix_job_history_workspace_timestamp", table_name="job_history")
    op.drop_index("ix_job_history_job_timestamp", table_name="job_history")
    op.drop_index("ix_job_history_job_id", table_name="job_history")
    op.drop_table("job_history")

    op.drop_index("ix_jobs_workspace_created", table_name="jobs")
    op.drop_index("ix_jobs_queue_status", table_name="jobs")
    op.drop_table("jobs")
