import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from api.infra.database import utcnow
from api.v1.core.registries import WebhookProcessorRegistry
from api.v1.infra.cache.billing import PRODUCTS_KEY, BillingCache, product_key
from api.v1.infra.cache.service import TTLCache
from api.v1.infra.webhooks.models import WebhookEvent
from api.v1.infra.webhooks.service import WebhookLedger, extract_object_id


class RecordingProcessor:
    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.calls: list[str] = []

    async def process(self, session, event_type, payload):
        self.calls.append(payload["id"])
        if len(self.calls) <= self.fail_times:
            raise RuntimeError("billing backend unavailable")


def subscription_event(event_id: str) -> dict:
    return {
        "id": event_id,
        "type": "customer.subscription.updated",
        "data": {"object": {"id": "sub_1", "status": "active"}},
    }


@pytest.fixture
def processors():
    return WebhookProcessorRegistry()


@pytest.fixture
def ledger(test_settings, processors):
    return WebhookLedger(test_settings, processors=processors)


async def event_count(session) -> int:
    return (await session.execute(select(func.count(WebhookEvent.id)))).scalar()


async def backdate(session, external_id, **values):
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.external_id == external_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()


class TestLogEvent:
    async def test_redelivery_returns_same_record(self, ledger, db_session):
        payload = subscription_event("evt_123")

        first, first_new = await ledger.log_event(
            db_session, "evt_123", "customer.subscription.updated", payload
        )
        second, second_new = await ledger.log_event(
            db_session,
            "evt_123",
            "customer.subscription.updated",
            {"id": "evt_123", "tampered": True},
        )

        assert first_new is True
        assert second_new is False
        assert second.id == first.id
        assert second.payload == payload
        assert await event_count(db_session) == 1

    async def test_new_event_defaults(self, ledger, db_session):
        event, _ = await ledger.log_event(
            db_session, "evt_1", "product.created", {"id": "evt_1"}
        )

        assert event.processed is False
        assert event.processed_at is None
        assert event.retry_count == 0
        assert event.error_message is None


class TestMarkProcessed:
    async def test_success_and_failure_are_recorded(self, ledger, db_session):
        await ledger.log_event(db_session, "evt_1", "product.created", {"id": "evt_1"})

        assert await ledger.mark_processed(db_session, "evt_1", "boom")
        event = await ledger.get_by_external_id(db_session, "evt_1")
        assert event.processed is False
        assert event.processed_at is None
        assert event.error_message == "boom"
        assert event.retry_count == 1

        assert await ledger.mark_processed(db_session, "evt_1")
        event = await ledger.get_by_external_id(db_session, "evt_1")
        assert event.processed is True
        assert event.processed_at is not None
        assert event.error_message is None
        assert event.retry_count == 2

    async def test_unknown_event(self, ledger, db_session):
        assert await ledger.mark_processed(db_session, "evt_missing") is False


class TestReceive:
    async def test_processor_success(self, ledger, processors, db_session):
        processor = RecordingProcessor()
        processors.register("customer.subscription.updated", processor)

        receipt = await ledger.receive(
            db_session,
            "evt_1",
            "customer.subscription.updated",
            subscription_event("evt_1"),
        )

        assert receipt.is_new is True
        assert receipt.processed is True
        assert processor.calls == ["evt_1"]

    async def test_duplicate_delivery_is_not_reprocessed(
        self, ledger, processors, db_session
    ):
        processor = RecordingProcessor()
        processors.register("customer.subscription.updated", processor)
        payload = subscription_event("evt_1")

        first = await ledger.receive(
            db_session, "evt_1", "customer.subscription.updated", payload
        )
        second = await ledger.receive(
            db_session, "evt_1", "customer.subscription.updated", payload
        )

        assert second.event_id == first.event_id
        assert second.is_new is False
        assert second.processed is True
        assert processor.calls == ["evt_1"]

    async def test_processor_failure_is_recorded(self, ledger, processors, db_session):
        processors.register(
            "customer.subscription.updated", RecordingProcessor(fail_times=1)
        )

        receipt = await ledger.receive(
            db_session,
            "evt_1",
            "customer.subscription.updated",
            subscription_event("evt_1"),
        )

        assert receipt.is_new is True
        assert receipt.processed is False
        event = await ledger.get_by_external_id(db_session, "evt_1")
        assert event.processed is False
        assert event.error_message == "billing backend unavailable"
        assert event.retry_count == 1

    async def test_unprocessed_redelivery_is_attempted_again(
        self, ledger, processors, db_session
    ):
        processor = RecordingProcessor(fail_times=1)
        processors.register("customer.subscription.updated", processor)
        payload = subscription_event("evt_1")

        await ledger.receive(db_session, "evt_1", "customer.subscription.updated", payload)
        receipt = await ledger.receive(
            db_session, "evt_1", "customer.subscription.updated", payload
        )

        assert receipt.is_new is False
        assert receipt.processed is True
        assert processor.calls == ["evt_1", "evt_1"]

    async def test_events_without_processor_are_processed(self, ledger, db_session):
        receipt = await ledger.receive(
            db_session, "evt_9", "invoice.paid", {"id": "evt_9"}
        )
        assert receipt.processed is True

    async def test_receive_invalidates_billing_cache(
        self, test_settings, processors, db_session
    ):
        billing = BillingCache(TTLCache(test_settings))
        ledger = WebhookLedger(test_settings, processors, billing_cache=billing)
        await billing.cache_billing_data(db_session, PRODUCTS_KEY, ["prod_1"])
        await billing.cache_billing_data(db_session, product_key("prod_1"), {"n": 1})
        await billing.cache_billing_data(db_session, product_key("prod_2"), {"n": 2})

        await ledger.receive(
            db_session,
            "evt_p",
            "product.updated",
            {"id": "evt_p", "data": {"object": {"id": "prod_1"}}},
        )

        assert await billing.get_cached_billing_data(db_session, PRODUCTS_KEY) is None
        assert (
            await billing.get_cached_billing_data(db_session, product_key("prod_1"))
            is None
        )
        assert await billing.get_cached_billing_data(
            db_session, product_key("prod_2")
        ) == {"n": 2}


class TestRetries:
    async def test_eligible_events(self, ledger, db_session):
        for external_id in ("evt_a", "evt_b", "evt_c", "evt_d"):
            await ledger.log_event(
                db_session, external_id, "product.updated", {"id": external_id}
            )
        await ledger.mark_processed(db_session, "evt_b")
        await backdate(db_session, "evt_c", retry_count=3)
        await backdate(
            db_session, "evt_d", created_at=utcnow() - timedelta(hours=25)
        )

        eligible = await ledger.retry_eligible(db_session)

        assert [e.external_id for e in eligible] == ["evt_a"]
        assert {
            e.external_id for e in await ledger.retry_eligible(db_session, max_retries=5)
        } == {"evt_a", "evt_c"}

    async def test_run_retries(self, ledger, processors, db_session):
        processors.register("product.updated", RecordingProcessor())
        for external_id in ("evt_a", "evt_b"):
            await ledger.log_event(
                db_session, external_id, "product.updated", {"id": external_id}
            )
            await ledger.mark_processed(db_session, external_id, "timeout")

        summary = await ledger.run_retries(db_session)

        assert summary.attempted == 2
        assert summary.succeeded == 2
        assert summary.failed == 0
        for external_id in ("evt_a", "evt_b"):
            event = await ledger.get_by_external_id(db_session, external_id)
            assert event.processed is True
            assert event.retry_count == 2
        assert (await ledger.run_retries(db_session)).attempted == 0

    async def test_failing_retries_stop_at_limit(self, ledger, processors, db_session):
        processors.register("product.updated", RecordingProcessor(fail_times=99))
        await ledger.log_event(db_session, "evt_a", "product.updated", {"id": "evt_a"})

        for _ in range(5):
            await ledger.run_retries(db_session)

        event = await ledger.get_by_external_id(db_session, "evt_a")
        assert event.processed is False
        assert event.retry_count == 3


class SlowProcessor:
    def __init__(self, delay_s: float = 0.3):
        self.delay_s = delay_s
        self.calls: list[str] = []

    async def process(self, session, event_type, payload):
        self.calls.append(payload["id"])
        await asyncio.sleep(self.delay_s)


class TestProcessingLease:
    async def test_overlapping_deliveries_process_once(
        self, ledger, processors, session_factory
    ):
        processor = SlowProcessor()
        processors.register("customer.subscription.updated", processor)
        payload = subscription_event("evt_1")

        async def deliver(delay_s: float):
            await asyncio.sleep(delay_s)
            async with session_factory() as session:
                return await ledger.receive(
                    session, "evt_1", "customer.subscription.updated", payload
                )

        first, second = await asyncio.gather(deliver(0), deliver(0.1))

        assert processor.calls == ["evt_1"]
        assert sorted([first.processed, second.processed]) == [False, True]
        assert second.event_id == first.event_id
        async with session_factory() as session:
            event = await ledger.get_by_external_id(session, "evt_1")
        assert event.processed is True
        assert event.retry_count == 1
        assert event.processing_started_at is None

    async def test_lease_is_exclusive_until_released(self, ledger, db_session):
        await ledger.log_event(db_session, "evt_1", "invoice.paid", {"id": "evt_1"})

        assert await ledger.claim_for_processing(db_session, "evt_1") is True
        assert await ledger.claim_for_processing(db_session, "evt_1") is False

        await ledger.mark_processed(db_session, "evt_1", "timeout")
        event = await ledger.get_by_external_id(db_session, "evt_1")
        assert event.processing_started_at is None
        assert await ledger.claim_for_processing(db_session, "evt_1") is True

    async def test_abandoned_lease_can_be_taken_over(
        self, ledger, test_settings, db_session
    ):
        await ledger.log_event(db_session, "evt_1", "invoice.paid", {"id": "evt_1"})
        assert await ledger.claim_for_processing(db_session, "evt_1") is True

        await backdate(
            db_session,
            "evt_1",
            processing_started_at=utcnow()
            - timedelta(seconds=test_settings.webhook_processing_lease_s + 1),
        )

        assert await ledger.claim_for_processing(db_session, "evt_1") is True

    async def test_processed_event_cannot_be_claimed(self, ledger, db_session):
        await ledger.log_event(db_session, "evt_1", "invoice.paid", {"id": "evt_1"})
        await ledger.mark_processed(db_session, "evt_1")

        assert await ledger.claim_for_processing(db_session, "evt_1") is False

    async def test_retry_run_skips_leased_events(self, ledger, processors, db_session):
        processor = RecordingProcessor()
        processors.register("product.updated", processor)
        for external_id in ("evt_a", "evt_b"):
            await ledger.log_event(
                db_session, external_id, "product.updated", {"id": external_id}
            )
        assert await ledger.claim_for_processing(db_session, "evt_a") is True

        summary = await ledger.run_retries(db_session)

        assert summary.attempted == 1
        assert processor.calls == ["evt_b"]
        event = await ledger.get_by_external_id(db_session, "evt_a")
        assert event.processed is False
        assert event.retry_count == 0


async def test_purge_old(ledger, db_session):
    for external_id in ("evt_old", "evt_recent", "evt_failed"):
        await ledger.log_event(
            db_session, external_id, "product.updated", {"id": external_id}
        )
    await ledger.mark_processed(db_session, "evt_old")
    await ledger.mark_processed(db_session, "evt_recent")
    await backdate(
        db_session, "evt_old", processed_at=utcnow() - timedelta(days=91)
    )
    await backdate(
        db_session, "evt_failed", created_at=utcnow() - timedelta(days=200)
    )

    assert await ledger.purge_old(db_session) == 1
    assert await ledger.get_by_external_id(db_session, "evt_old") is None
    assert await event_count(db_session) == 2


def test_extract_object_id():
    assert extract_object_id({"data": {"object": {"id": "sub_1"}}}) == "sub_1"
    assert extract_object_id({"data": {"object": {"id": 42}}}) == "42"
    assert extract_object_id({"data": {}}) is None
    assert extract_object_id({}) is None
    assert extract_object_id({"data": {"object": "sub_1"}}) is None
