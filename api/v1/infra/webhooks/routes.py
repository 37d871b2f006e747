"""
Billing webhook receiver and ledger administration endpoints.
"""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session
from api.v1.core.exceptions import ValidationError, create_success_response
from api.v1.core.security import Principal, ServicePrincipalDep
from api.v1.infra.webhooks.schemas import BillingEventPayload, WebhookPurgeResponse
from api.v1.infra.webhooks.service import WebhookLedger
from api.v1.infra.webhooks.signature import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin/webhooks", tags=["webhooks"])


@router.post("/billing", response_model=dict)
async def receive_billing_event(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """
    Record a billing event and process it.

    The delivery is acknowledged once the event is logged; processing
    failures are kept on the event row for the retry run.
    """
    body = await request.body()
    if settings.webhook_signing_secret:
        verify_signature(
            body,
            signature,
            settings.webhook_signing_secret,
            settings.webhook_signature_tolerance_s,
        )

    try:
        raw = json.loads(body or b"null")
        event = BillingEventPayload.model_validate(raw)
    except (ValueError, PydanticValidationError) as e:
        raise ValidationError(
            "Invalid webhook payload", details={"error": str(e)}
        ) from None

    ledger = WebhookLedger(settings)
    receipt = await ledger.receive(session, event.id, event.type, raw)

    logger.info(
        "Billing webhook received",
        extra={
            "external_id": event.id,
            "event_type": event.type,
            "is_new": receipt.is_new,
            "processed": receipt.processed,
        },
    )

    return create_success_response(data=receipt.model_dump(mode="json"))


@admin_router.post("/retry", response_model=dict)
async def retry_webhook_events(
    max_retries: int | None = Query(
        default=None, ge=0, description="Override the attempt cap"
    ),
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Reprocess unprocessed events that still have attempts left."""
    ledger = WebhookLedger(settings)
    result = await ledger.run_retries(session, max_retries)
    return create_success_response(data=result.model_dump(mode="json"))


@admin_router.post("/purge", response_model=dict)
async def purge_webhook_events(
    days: int | None = Query(default=None, ge=1, description="Retention in days"),
    principal: Principal = ServicePrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Delete processed events older than the retention window."""
    ledger = WebhookLedger(settings)
    retention = settings.webhook_retention_days if days is None else days
    count = await ledger.purge_old(session, retention)
    return create_success_response(
        data=WebhookPurgeResponse(retention_days=retention, count=count).model_dump()
    )
