"""add processing lease to webhook events

Revision ID: e5c07b9d2a18
Revises: 8d2a5c6e4f17
Create Date: 2025-10-09 16:41:05.227391

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "e5c07b9d2a18"
down_revision: Union[str, Sequence[str], None] = "8d2a5c6e4f17"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column(
        "webhook_events",
        sa.Column(
            "processing_started_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Lease held while a delivery is processing",
        ),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_column("webhook_events", "processing_started_at")
