"""
Job change notifications for real-time observers.

Every lifecycle mutation publishes a ``JobSnapshot`` from inside the same
transaction as its conditional update:

* on PostgreSQL the snapshot is sent with ``pg_notify`` so it is delivered
  on commit and discarded on rollback, across every process;
  ``PostgresJobEventListener`` relays it into the local broker of an API
  process;
* on other backends the snapshot is staged on the session and fanned out to
  the in-process broker after commit.

Delivery is best-effort and at-least-once. Observers reconcile through the
job read endpoints when they miss a message.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import Session

from api.config.settings import settings
from api.v1.infra.jobs.schemas import JobSnapshot

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "job_status_changed"
# pg_notify payloads must stay under 8000 bytes
MAX_NOTIFY_PAYLOAD = 7900
_PENDING_KEY = "pending_job_events"


def snapshot_from_row(row: Any) -> JobSnapshot:
    """Build a snapshot from a Job instance or a RETURNING row mapping."""
    data = row if isinstance(row, dict) else getattr(row, "_mapping", None)
    if data is None:
        data = {
            "id": row.id,
            "owner_id": row.owner_id,
            "job_type": row.job_type,
            "status": row.status,
            "progress_percent": row.progress_percent,
            "progress_message": row.progress_message,
            "error_code": row.error_code,
            "error_message": row.error_message,
            "result": row.result,
            "updated_at": row.updated_at,
        }
    return JobSnapshot(
        job_id=data["id"],
        owner_id=data["owner_id"],
        job_type=data["job_type"],
        status=data["status"],
        progress_percent=data["progress_percent"],
        progress_message=data["progress_message"],
        error_code=data["error_code"],
        error_message=data["error_message"],
        result=data["result"],
        updated_at=data["updated_at"],
    )


def topic_for(owner_id: UUID) -> str:
    return f"jobs:{owner_id}"


class JobEventBroker:
    """In-process fan-out of job snapshots to per-owner subscribers."""

    def __init__(self, queue_size: int | None = None):
        self.queue_size = queue_size or settings.notifier_queue_size
        self._subscribers: dict[str, set[asyncio.Queue[JobSnapshot]]] = {}

    def subscriber_count(self, owner_id: UUID | None = None) -> int:
        if owner_id is None:
            return sum(len(s) for s in self._subscribers.values())
        return len(self._subscribers.get(topic_for(owner_id), ()))

    def publish_nowait(self, snapshot: JobSnapshot) -> int:
        """Deliver to current subscribers; returns the number reached."""
        queues = self._subscribers.get(topic_for(snapshot.owner_id), ())
        delivered = 0
        for queue in list(queues):
            if queue.full():
                # Slow consumer: drop its oldest update rather than block
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning(
                    "Job event subscriber lagging, dropped oldest update",
                    extra={"owner_id": str(snapshot.owner_id)},
                )
            queue.put_nowait(snapshot)
            delivered += 1
        return delivered

    @asynccontextmanager
    async def subscribe(self, owner_id: UUID) -> AsyncIterator[asyncio.Queue[JobSnapshot]]:
        topic = topic_for(owner_id)
        queue: asyncio.Queue[JobSnapshot] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(topic, set()).add(queue)
        logger.debug("Job event subscriber added", extra={"topic": topic})
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(topic)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[topic]


# Global broker instance
job_events = JobEventBroker(settings.notifier_queue_size)


class JobNotifier:
    """Publishes snapshots as part of the caller's transaction."""

    def __init__(self, broker: JobEventBroker | None = None):
        self.broker = broker or job_events

    async def publish(self, session: AsyncSession, snapshot: JobSnapshot) -> None:
        if session.get_bind().dialect.name == "postgresql":
            await session.execute(
                text("SELECT pg_notify(:channel, :payload)"),
                {"channel": NOTIFY_CHANNEL, "payload": encode_snapshot(snapshot)},
            )
            return

        pending = session.sync_session.info.setdefault(_PENDING_KEY, [])
        pending.append((self.broker, snapshot))

    async def publish_many(
        self, session: AsyncSession, snapshots: list[JobSnapshot]
    ) -> None:
        for snapshot in snapshots:
            await self.publish(session, snapshot)


def encode_snapshot(snapshot: JobSnapshot) -> str:
    payload = snapshot.model_dump_json()
    if len(payload.encode()) > MAX_NOTIFY_PAYLOAD:
        payload = snapshot.model_copy(update={"result": None}).model_dump_json()
    return payload


@event.listens_for(Session, "after_commit")
def _flush_pending_events(session: Session) -> None:
    for broker, snapshot in session.info.pop(_PENDING_KEY, []):
        broker.publish_nowait(snapshot)


@event.listens_for(Session, "after_soft_rollback")
def _discard_pending_events(session: Session, previous_transaction) -> None:
    session.info.pop(_PENDING_KEY, None)


class PostgresJobEventListener:
    """LISTENs on the notify channel and relays snapshots into a broker."""

    def __init__(self, engine: AsyncEngine, broker: JobEventBroker | None = None):
        self.engine = engine
        self.broker = broker or job_events
        self._connection = None
        self._driver_connection = None

    async def start(self) -> None:
        self._connection = await self.engine.connect()
        raw = await self._connection.get_raw_connection()
        self._driver_connection = raw.driver_connection
        await self._driver_connection.add_listener(NOTIFY_CHANNEL, self._on_notify)
        logger.info("Listening for job events", extra={"channel": NOTIFY_CHANNEL})

    async def stop(self) -> None:
        if self._driver_connection is not None:
            await self._driver_connection.remove_listener(
                NOTIFY_CHANNEL, self._on_notify
            )
            self._driver_connection = None
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _on_notify(self, connection, pid, channel, payload: str) -> None:
        try:
            snapshot = JobSnapshot.model_validate(json.loads(payload))
        except ValueError:
            logger.warning(
                "Discarding malformed job event", extra={"channel": channel}
            )
            return
        self.broker.publish_nowait(snapshot)
