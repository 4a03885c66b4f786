"""Outbox repository for enqueue/claim/ack/retry/escalate operations."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.outbox.models import OutboxEvent
from app.outbox.types import OutboxStats

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000


@dataclass(frozen=True)
class ClaimResult:
    """Result of claiming outbox events."""

    claimed: list[OutboxEvent]


def enqueue_event(
    db: Session,
    *,
    event_type: str,
    entity_type: str,
    entity_id: UUID,
    payload: dict[str, Any] | None = None,
) -> OutboxEvent:
    """Append an event to the current transaction.

    The caller commits, so the event is written atomically with the entity change that implies it.
    """
    event = OutboxEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=dict(payload or {}),
        processed=False,
        retry_count=0,
    )
    db.add(event)
    return event


def compute_backoff(
    retry_count: int,
    base_sec: float,
    cap_sec: float,
) -> timedelta:
    """Compute exponential backoff with jitter.

    Args:
        retry_count: Failed attempts so far (already incremented)
        base_sec: Base delay in seconds; 0 disables backoff
        cap_sec: Maximum delay cap in seconds

    Returns:
        timedelta to add to now for the next available_at
    """
    if base_sec <= 0:
        return timedelta(0)
    delay = min(cap_sec, base_sec * (2 ** min(retry_count - 1, 10)))
    jitter = random.uniform(0, delay * 0.1)
    return timedelta(seconds=delay + jitter)


def _truncate(message: str | None) -> str | None:
    return message[:MAX_ERROR_LENGTH] if message else None


class OutboxRepo:
    """Repository for outbox operations with lease-based claiming."""

    def __init__(self, db: Session, *, worker_id: str | None = None) -> None:
        self.db = db
        self.worker_id = worker_id

    def claim_batch(
        self,
        *,
        now: datetime,
        batch_size: int,
        lock_ttl_sec: int,
        max_retries: int,
    ) -> ClaimResult:
        """Claim the oldest unprocessed events for this worker.

        Uses FOR UPDATE SKIP LOCKED where supported, and stamps a lease on every
        claimed row in the same transaction, so an overlapping run skips them
        until the lease expires (crash recovery).

        Args:
            now: Current timestamp
            batch_size: Maximum number of events to claim
            lock_ttl_sec: Lease TTL in seconds
            max_retries: Events at this retry count are never claimed

        Returns:
            ClaimResult with the claimed events, oldest first
        """
        if not self.worker_id:
            raise ValueError("claim_batch requires a worker_id")

        lock_deadline = now - timedelta(seconds=lock_ttl_sec)

        query = (
            self.db.query(OutboxEvent)
            .filter(
                OutboxEvent.processed.is_(False),
                OutboxEvent.retry_count < max_retries,
                OutboxEvent.available_at <= now,
                or_(
                    OutboxEvent.locked_at.is_(None),
                    OutboxEvent.locked_at <= lock_deadline,
                ),
            )
            .order_by(
                OutboxEvent.created_at.asc(),
                OutboxEvent.id.asc(),
            )
            .with_for_update(skip_locked=True)
            .limit(batch_size)
        )

        rows = query.all()
        for row in rows:
            row.locked_at = now
            row.locked_by = self.worker_id

        self.db.commit()
        return ClaimResult(claimed=rows)

    def _owned(self, outbox_id: UUID) -> OutboxEvent | None:
        filters = [OutboxEvent.id == outbox_id, OutboxEvent.processed.is_(False)]
        if self.worker_id:
            filters.append(OutboxEvent.locked_by == self.worker_id)
        return self.db.query(OutboxEvent).filter(*filters).first()

    def mark_succeeded(self, *, outbox_id: UUID, now: datetime) -> bool:
        """Finalize an event; commits together with whatever the handler staged in the session.

        Returns:
            True if the event was updated, False if the lease was lost
        """
        row = self._owned(outbox_id)
        if row is None:
            logger.warning(
                "mark_succeeded failed: lease lost or event already processed",
                extra={"outbox_id": str(outbox_id), "worker_id": self.worker_id},
            )
            return False

        row.processed = True
        row.processed_at = now
        row.error = None
        row.locked_at = None
        row.locked_by = None
        self.db.commit()
        return True

    def register_failure(
        self,
        *,
        outbox_id: UUID,
        error_message: str,
        max_retries: int,
        now: datetime,
    ) -> OutboxEvent | None:
        """Record a failed attempt without committing.

        Increments retry_count and stores the error. Once retry_count reaches
        max_retries the event is force-processed so it can never be retried
        forever; the caller adds the escalation records and commits.

        Returns:
            The updated event, or None if the lease was lost
        """
        row = self._owned(outbox_id)
        if row is None:
            logger.warning(
                "register_failure failed: lease lost or event already processed",
                extra={"outbox_id": str(outbox_id), "worker_id": self.worker_id},
            )
            return None

        row.retry_count = (row.retry_count or 0) + 1
        row.error = _truncate(error_message)
        row.locked_at = None
        row.locked_by = None
        if row.retry_count >= max_retries:
            row.processed = True
            row.processed_at = now
        return row

    def release(self, outbox_ids: Iterable[UUID]) -> int:
        """Drop the lease on events this worker will not process in this run."""
        ids = list(outbox_ids)
        if not ids:
            return 0

        filters = [OutboxEvent.id.in_(ids), OutboxEvent.processed.is_(False)]
        if self.worker_id:
            filters.append(OutboxEvent.locked_by == self.worker_id)

        count = (
            self.db.query(OutboxEvent)
            .filter(*filters)
            .update({OutboxEvent.locked_at: None, OutboxEvent.locked_by: None}, synchronize_session=False)
        )
        self.db.commit()
        return count

    def stats(self, *, max_retries: int) -> OutboxStats:
        total = self.db.query(func.count(OutboxEvent.id)).scalar() or 0
        unprocessed = (
            self.db.query(func.count(OutboxEvent.id)).filter(OutboxEvent.processed.is_(False)).scalar() or 0
        )
        # Escalated events are counted as failed even though they are processed.
        failed = (
            self.db.query(func.count(OutboxEvent.id)).filter(OutboxEvent.retry_count >= max_retries).scalar() or 0
        )
        return OutboxStats(total=total, unprocessed=unprocessed, failed=failed, processed=total - unprocessed)

    def cleanup_processed(self, *, older_than: datetime) -> int:
        count = (
            self.db.query(OutboxEvent)
            .filter(
                OutboxEvent.processed.is_(True),
                OutboxEvent.processed_at.isnot(None),
                OutboxEvent.processed_at < older_than,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return count

    def find_for_entity(self, *, entity_type: str, entity_id: UUID) -> list[OutboxEvent]:
        return (
            self.db.query(OutboxEvent)
            .filter(OutboxEvent.entity_type == entity_type, OutboxEvent.entity_id == entity_id)
            .order_by(OutboxEvent.created_at.asc())
            .all()
        )
