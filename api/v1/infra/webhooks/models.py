"""
Webhook idempotency ledger table.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, Index, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from api.infra.database import Base, UTCDateTime, utcnow


class WebhookEvent(Base):
    """
    One row per externally delivered event.

    ``external_id`` is the sender's identifier and is unique, so redelivery
    of the same event never creates a second record.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    external_id: Mapped[str] = mapped_column(
        Text, nullable=False, unique=True, comment="Sender's event identifier"
    )
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Lease held while a delivery is processing"
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Processing attempts made"
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_webhook_events_event_type", "event_type"),
        Index("ix_webhook_events_retry", "processed", "retry_count", "created_at"),
        Index("ix_webhook_events_cleanup", "processed", "processed_at"),
    )
