"""
Webhook ledger Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class BillingEventObject(BaseModel):
    id: str | None = None

    model_config = {"extra": "allow"}


class BillingEventData(BaseModel):
    object: BillingEventObject = Field(default_factory=BillingEventObject)

    model_config = {"extra": "allow"}


class BillingEventPayload(BaseModel):
    """Envelope posted by the billing provider."""

    id: str = Field(..., min_length=1, description="Provider event id")
    type: str = Field(..., min_length=1, description="Provider event type")
    data: BillingEventData = Field(default_factory=BillingEventData)

    model_config = {"extra": "allow"}


class WebhookReceipt(BaseModel):
    event_id: UUID
    is_new: bool
    processed: bool


class WebhookEventResponse(BaseModel):
    id: UUID
    external_id: str
    event_type: str
    payload: dict[str, Any]
    processed: bool
    processed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class WebhookRetryResponse(BaseModel):
    attempted: int
    succeeded: int
    failed: int
    event_ids: list[UUID] = Field(default_factory=list)


class WebhookPurgeResponse(BaseModel):
    retention_days: int
    count: int
