"""add webhook events ledger and cache store

Revision ID: 8d2a5c6e4f17
Revises: 3b7e1f0c9a42
Create Date: 2025-10-06 11:02:53.904117

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8d2a5c6e4f17"
down_revision: Union[str, Sequence[str], None] = "3b7e1f0c9a42"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # Idempotency ledger for billing provider events
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "external_id",
            sa.Text,
            nullable=False,
            unique=True,
            comment="Sender's event identifier",
        ),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("processed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "retry_count",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Processing attempts made",
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
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])
    op.create_index(
        "ix_webhook_events_retry",
        "webhook_events",
        ["processed", "retry_count", "created_at"],
    )
    op.create_index(
        "ix_webhook_events_cleanup", "webhook_events", ["processed", "processed_at"]
    )

    # Category-scoped TTL cache
    op.create_table(
        "cache_store",
        sa.Column("category", sa.Text, primary_key=True),
        sa.Column("key", sa.Text, primary_key=True),
        sa.Column("value", sa.JSON, nullable=False),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=True),
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
    )
    op.create_index("ix_cache_store_expires_at", "cache_store", ["expires_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("cache_store")
    op.drop_table("webhook_events")
