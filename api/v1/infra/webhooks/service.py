"""
Webhook idempotency ledger.

Billing events arrive at least once. Each is recorded under the sender's
event id before anything else happens; processing outcomes are written back
onto that row instead of being reported to the sender, and failed events
are picked up again by the retry run.
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings
from api.infra.database import utcnow
from api.v1.core.registries import WebhookProcessorRegistry, webhook_processor_registry
from api.v1.infra.cache.billing import BillingCache
from api.v1.infra.cache.service import TTLCache
from api.v1.infra.webhooks.invalidation import invalidate_on_event
from api.v1.infra.webhooks.models import WebhookEvent
from api.v1.infra.webhooks.schemas import WebhookReceipt, WebhookRetryResponse

logger = logging.getLogger(__name__)


def extract_object_id(payload: dict[str, Any]) -> str | None:
    """The provider puts the affected object under ``data.object.id``."""
    obj = (payload.get("data") or {}).get("object") or {}
    object_id = obj.get("id") if isinstance(obj, dict) else None
    return str(object_id) if object_id is not None else None


class WebhookLedger:
    """Records, processes and retries externally delivered events."""

    def __init__(
        self,
        settings: Settings,
        processors: WebhookProcessorRegistry | None = None,
        billing_cache: BillingCache | None = None,
    ):
        self.settings = settings
        self.processors = processors or webhook_processor_registry
        self.billing_cache = billing_cache or BillingCache(TTLCache(settings))

    async def get_by_external_id(
        self, session: AsyncSession, external_id: str
    ) -> WebhookEvent | None:
        result = await session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.external_id == external_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def log_event(
        self,
        session: AsyncSession,
        external_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> tuple[WebhookEvent, bool]:
        """
        Record an event once.

        Returns the event and whether it was newly created. A redelivered
        event is returned unchanged; its payload is never overwritten.
        """
        existing = await self.get_by_external_id(session, external_id)
        if existing is not None:
            logger.info(
                "Duplicate webhook delivery",
                extra={"external_id": external_id, "event_id": str(existing.id)},
            )
            return existing, False

        now = utcnow()
        event = WebhookEvent(
            id=uuid4(),
            external_id=external_id,
            event_type=event_type,
            payload=payload,
            processed=False,
            processed_at=None,
            processing_started_at=None,
            error_message=None,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(event)
        try:
            await session.commit()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            await session.rollback()
            existing = await self.get_by_external_id(session, external_id)
            if existing is None:
                raise
            return existing, False

        logger.info(
            "Webhook event logged",
            extra={
                "external_id": external_id,
                "event_type": event_type,
                "event_id": str(event.id),
            },
        )
        return event, True

    async def mark_processed(
        self, session: AsyncSession, external_id: str, error: str | None = None
    ) -> bool:
        """
        Record a processing attempt. Success sets ``processed``; an error is
        stored and leaves the event unprocessed. Attempts always count.
        """
        now = utcnow()
        result = await session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.external_id == external_id)
            .values(
                processed=error is None,
                processed_at=now if error is None else None,
                processing_started_at=None,
                error_message=error,
                retry_count=WebhookEvent.retry_count + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return (result.rowcount or 0) == 1

    async def claim_for_processing(
        self, session: AsyncSession, external_id: str
    ) -> bool:
        """
        Take the processing lease on an unprocessed event.

        At most one delivery or retry run holds the lease at a time; a lease
        older than ``webhook_processing_lease_s`` is treated as abandoned.
        ``mark_processed`` releases it.
        """
        now = utcnow()
        stale = now - timedelta(seconds=self.settings.webhook_processing_lease_s)
        result = await session.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.external_id == external_id,
                WebhookEvent.processed.is_(False),
                or_(
                    WebhookEvent.processing_started_at.is_(None),
                    WebhookEvent.processing_started_at < stale,
                ),
            )
            .values(processing_started_at=now, updated_at=now)
            .returning(WebhookEvent.id)
            .execution_options(synchronize_session=False)
        )
        claimed = result.first() is not None
        await session.commit()
        if not claimed:
            logger.info(
                "Webhook event already processed or in progress",
                extra={"external_id": external_id},
            )
        return claimed

    async def process_event(
        self,
        session: AsyncSession,
        external_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> bool:
        """
        Invalidate affected cache keys, run the processor, record the outcome.

        The caller must hold the lease from ``claim_for_processing``.
        """
        error: str | None = None
        try:
            await invalidate_on_event(
                session, self.billing_cache, event_type, extract_object_id(payload)
            )
            if self.processors.has(event_type):
                processor = self.processors.get(event_type)
                await processor.process(session, event_type, payload)
                await session.commit()
        except Exception as e:
            await session.rollback()
            error = str(e) or type(e).__name__
            logger.warning(
                "Webhook processing failed",
                extra={
                    "external_id": external_id,
                    "event_type": event_type,
                    "error": error,
                },
                exc_info=True,
            )

        await self.mark_processed(session, external_id, error)
        return error is None

    async def receive(
        self,
        session: AsyncSession,
        external_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> WebhookReceipt:
        """
        Log an incoming event and process it unless already processed.

        A delivery that finds another one mid-processing acknowledges without
        running the processor; the receipt reports the row as it stands.
        """
        event, is_new = await self.log_event(session, external_id, event_type, payload)
        event_id = event.id
        if event.processed:
            return WebhookReceipt(event_id=event_id, is_new=is_new, processed=True)

        if not await self.claim_for_processing(session, external_id):
            current = await self.get_by_external_id(session, external_id)
            processed = current is not None and current.processed
            await session.rollback()
            return WebhookReceipt(event_id=event_id, is_new=is_new, processed=processed)

        processed = await self.process_event(
            session, event.external_id, event.event_type, event.payload
        )
        return WebhookReceipt(event_id=event_id, is_new=is_new, processed=processed)

    async def retry_eligible(
        self, session: AsyncSession, max_retries: int | None = None
    ) -> list[WebhookEvent]:
        """Unprocessed recent events with attempts left, oldest first."""
        limit = self.settings.webhook_max_retries if max_retries is None else max_retries
        window_start = utcnow() - timedelta(
            hours=self.settings.webhook_retry_window_hours
        )
        result = await session.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(False),
                WebhookEvent.retry_count < limit,
                WebhookEvent.created_at > window_start,
            )
            .order_by(WebhookEvent.created_at, WebhookEvent.id)
            .limit(self.settings.webhook_retry_batch_size)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars())

    async def run_retries(
        self, session: AsyncSession, max_retries: int | None = None
    ) -> WebhookRetryResponse:
        """Reprocess the current retry batch, skipping events leased elsewhere."""
        candidates = [
            (event.id, event.external_id, event.event_type, event.payload)
            for event in await self.retry_eligible(session, max_retries)
        ]
        await session.rollback()

        attempted: list[UUID] = []
        succeeded: list[UUID] = []
        for event_id, external_id, event_type, payload in candidates:
            if not await self.claim_for_processing(session, external_id):
                continue
            attempted.append(event_id)
            if await self.process_event(session, external_id, event_type, payload):
                succeeded.append(event_id)

        if attempted:
            logger.info(
                "Webhook retry run finished",
                extra={"attempted": len(attempted), "succeeded": len(succeeded)},
            )
        return WebhookRetryResponse(
            attempted=len(attempted),
            succeeded=len(succeeded),
            failed=len(attempted) - len(succeeded),
            event_ids=attempted,
        )

    async def purge_old(self, session: AsyncSession, days: int | None = None) -> int:
        """Delete processed events older than the retention window."""
        retention = self.settings.webhook_retention_days if days is None else days
        cutoff = utcnow() - timedelta(days=retention)
        result = await session.execute(
            delete(WebhookEvent)
            .where(
                WebhookEvent.processed.is_(True),
                WebhookEvent.processed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        count = result.rowcount or 0
        if count:
            logger.info(
                "Purged old webhook events",
                extra={"count": count, "retention_days": retention},
            )
        return count
