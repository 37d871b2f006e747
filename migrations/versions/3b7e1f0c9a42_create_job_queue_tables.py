"""create job queue and job log tables

Revision ID: 3b7e1f0c9a42
Revises:
Create Date: 2025-10-06 09:14:27.518204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7e1f0c9a42"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "job_queue",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.UUID(as_uuid=True), nullable=False, comment="Owning user"),
        sa.Column("job_type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Priority 1-10, higher is more urgent",
        ),
        sa.Column(
            "params",
            sa.JSON,
            nullable=False,
            comment="Job-specific parameters",
        ),
        sa.Column(
            "params_hash",
            sa.String(64),
            nullable=False,
            comment="SHA-256 of canonical params, used for dedupe and result lookups",
        ),
        # Status tracking
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|processing|completed|failed|cancelled",
        ),
        sa.Column("progress_percent", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("progress_message", sa.Text, nullable=True),
        # Execution metadata
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("worker_id", sa.Text, nullable=True, comment="Worker that claimed the job"),
        # Error handling
        sa.Column("error_code", sa.Text, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_details", sa.JSON, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("result", sa.JSON, nullable=True),
        # Scheduling
        sa.Column(
            "scheduled_for",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "expires_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now() + interval '24 hours'"),
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="job_queue_status_check",
        ),
        sa.CheckConstraint(
            "job_type IN ('platform_sync', 'ai_analysis', 'seo_submission', "
            "'quota_reset', 'token_refresh')",
            name="job_queue_type_check",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="job_queue_priority_check"),
        sa.CheckConstraint(
            "progress_percent BETWEEN 0 AND 100", name="job_queue_progress_check"
        ),
        sa.CheckConstraint(
            "(status IN ('completed', 'failed', 'cancelled') AND completed_at IS NOT NULL)"
            " OR (status IN ('pending', 'processing') AND completed_at IS NULL)",
            name="job_queue_valid_completion",
        ),
    )

    # Indexes carry static predicates only; expiry and cooldown checks are
    # applied by the queries at call time
    op.create_index(
        "ix_job_queue_owner_status_created",
        "job_queue",
        ["owner_id", "status", "created_at"],
    )
    op.create_index(
        "ix_job_queue_dedupe",
        "job_queue",
        ["owner_id", "job_type", "params_hash", "status"],
    )
    op.create_index(
        "ix_job_queue_pending_pickup",
        "job_queue",
        ["priority", "created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )
    op.create_index("ix_job_queue_stuck_detection", "job_queue", ["status", "started_at"])
    op.create_index("ix_job_queue_expiration", "job_queue", ["status", "expires_at"])
    op.create_index(
        "ix_job_queue_retry_eligible",
        "job_queue",
        ["status", "retry_count", "updated_at"],
    )
    op.create_index("ix_job_queue_cleanup", "job_queue", ["status", "completed_at"])

    op.create_table(
        "job_log",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("job_queue.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("level", sa.Text, nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "level IN ('debug', 'info', 'warning', 'error')",
            name="job_log_level_check",
        ),
    )
    op.create_index("ix_job_log_job_time", "job_log", ["job_id", "created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("job_log")
    op.drop_table("job_queue")
