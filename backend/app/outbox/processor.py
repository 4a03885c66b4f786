"""Outbox processor: drains pending events oldest-first with bounded retries.

Each event is handled and finalized in its own transaction, so a crash
mid-batch leaves finished events finished and the rest untouched; their lease
expires and a later run picks them up again (at-least-once delivery).
"""
from __future__ import annotations

import logging
import os
import socket
from datetime import datetime
from threading import Event
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from app.attachment.blob_store import BlobStore, get_blob_store
from app.audit.service import EscalationNotice, EscalationNotifier, LoggingNotifier, record_audit_event
from app.common.time import utcnow
from app.config import get_settings
from app.database import SessionLocal
from app.outbox.dispatch import DEFAULT_ROUTES, EventRoute, resolve_route
from app.outbox.models import OutboxEvent
from app.outbox.repo import OutboxRepo, compute_backoff
from app.outbox.types import (
    PROCESSING_FAILED_AUDIT_EVENT,
    HandlerContext,
    ProcessingError,
    ProcessingResult,
    ProcessorConfig,
)

logger = logging.getLogger(__name__)


def build_processor_config() -> ProcessorConfig:
    """Build processor configuration from settings."""
    settings = get_settings()
    worker_id = f"{socket.gethostname()}:{os.getpid()}"

    return ProcessorConfig(
        batch_size=settings.outbox_batch_size,
        max_retries=settings.outbox_max_retries,
        lock_ttl_sec=settings.outbox_lock_ttl_sec,
        backoff_base_sec=settings.outbox_retry_backoff_base_sec,
        backoff_cap_sec=settings.outbox_retry_backoff_cap_sec,
        worker_id=worker_id,
    )


def _describe(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class OutboxProcessor:
    """Consumes outbox events and turns them into confirmed blob store state."""

    def __init__(
        self,
        cfg: ProcessorConfig,
        *,
        blob_store: BlobStore | None = None,
        session_factory: Callable[[], Session] | None = None,
        notifier: EscalationNotifier | None = None,
        routes: Mapping[tuple[str, str], EventRoute] | None = None,
    ) -> None:
        self.cfg = cfg
        self._blob_store = blob_store
        self.session_factory = session_factory or SessionLocal
        self.notifier = notifier or LoggingNotifier()
        self.routes = routes if routes is not None else DEFAULT_ROUTES

    @property
    def blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = get_blob_store()
        return self._blob_store

    def process_pending_events(
        self,
        *,
        now: datetime | None = None,
        stop_event: Event | None = None,
    ) -> ProcessingResult:
        """Run one batch.

        Args:
            now: Fixed clock for the whole run; defaults to the wall clock per event
            stop_event: When set, no further handler is started and the remaining
                claimed events are released for the next run

        Returns:
            ProcessingResult with processed/failed/skipped counts and per-event errors
        """
        result = ProcessingResult()
        blob_store = self.blob_store
        db = self.session_factory()

        try:
            repo = OutboxRepo(db, worker_id=self.cfg.worker_id)
            claim = repo.claim_batch(
                now=now or utcnow(),
                batch_size=self.cfg.batch_size,
                lock_ttl_sec=self.cfg.lock_ttl_sec,
                max_retries=self.cfg.max_retries,
            )
            claimed_ids = [row.id for row in claim.claimed]
            if not claimed_ids:
                return result

            logger.info("claimed outbox batch (worker_id=%s count=%s)", self.cfg.worker_id, len(claimed_ids))

            for index, event_id in enumerate(claimed_ids):
                if stop_event is not None and stop_event.is_set():
                    released = repo.release(claimed_ids[index:])
                    logger.info(
                        "stop requested, released remaining events",
                        extra={"worker_id": self.cfg.worker_id, "released": released},
                    )
                    break
                self._process_one(db, repo, blob_store, event_id, now or utcnow(), result)

            logger.info(
                "outbox batch done processed=%s failed=%s skipped=%s",
                result.processed,
                result.failed,
                result.skipped,
            )
            if result.unsupported:
                logger.warning(
                    "outbox batch left %s unsupported events unprocessed",
                    result.unsupported,
                    extra={"worker_id": self.cfg.worker_id},
                )
            return result
        finally:
            db.close()

    def _process_one(
        self,
        db: Session,
        repo: OutboxRepo,
        blob_store: BlobStore,
        event_id: UUID,
        now: datetime,
        result: ProcessingResult,
    ) -> None:
        event = db.query(OutboxEvent).filter(OutboxEvent.id == event_id).first()
        if event is None:
            return

        route = resolve_route(event.entity_type, event.event_type, self.routes)
        if route is None:
            logger.warning(
                "unsupported outbox event, leaving unprocessed",
                extra={
                    "outbox_id": str(event_id),
                    "entity_type": event.entity_type,
                    "event_type": event.event_type,
                },
            )
            repo.release([event_id])
            result.skipped += 1
            result.unsupported += 1
            return

        ctx = HandlerContext(db=db, event=event, blob_store=blob_store, now=now)
        try:
            route.handle(ctx)
            succeeded = repo.mark_succeeded(outbox_id=event_id, now=now)
        except Exception as exc:
            db.rollback()
            self._handle_failure(db, repo, blob_store, route, event_id, _describe(exc), now, result)
            return

        if not succeeded:
            # Lease lost to another processor; drop whatever the handler staged.
            db.rollback()
            result.skipped += 1
            return

        result.processed += 1
        logger.info(
            "outbox event processed",
            extra={"outbox_id": str(event_id), "event_type": event.event_type, "entity_id": str(event.entity_id)},
        )

    def _handle_failure(
        self,
        db: Session,
        repo: OutboxRepo,
        blob_store: BlobStore,
        route: EventRoute,
        event_id: UUID,
        error: str,
        now: datetime,
        result: ProcessingResult,
    ) -> None:
        row = repo.register_failure(
            outbox_id=event_id,
            error_message=error,
            max_retries=self.cfg.max_retries,
            now=now,
        )
        if row is None:
            # Another worker owns the event now; its outcome is theirs to record.
            db.rollback()
            result.skipped += 1
            return

        result.failed += 1
        result.errors.append(ProcessingError(event_id=event_id, error=error))

        if not row.processed:
            delay = compute_backoff(row.retry_count, self.cfg.backoff_base_sec, self.cfg.backoff_cap_sec)
            if delay:
                row.available_at = now + delay
            db.commit()
            logger.info(
                "outbox event failed, will retry",
                extra={"outbox_id": str(event_id), "retry_count": row.retry_count, "error": error},
            )
            return

        notice = self._escalate(db, blob_store, route, row, error, now)
        db.commit()

        try:
            self.notifier.notify(notice)
        except Exception:
            logger.exception("escalation notifier failed", extra={"outbox_id": str(event_id)})

    def _escalate(
        self,
        db: Session,
        blob_store: BlobStore,
        route: EventRoute,
        row: OutboxEvent,
        error: str,
        now: datetime,
    ) -> EscalationNotice:
        """Stage the exhaustion hook and the audit record; the caller commits."""
        if route.on_exhausted is not None:
            try:
                route.on_exhausted(HandlerContext(db=db, event=row, blob_store=blob_store, now=now), error)
            except Exception:
                logger.exception(
                    "exhaustion hook failed",
                    extra={"outbox_id": str(row.id), "entity_id": str(row.entity_id)},
                )

        payload = dict(row.payload or {})
        record_audit_event(
            db,
            organization_id=payload.get("organizationId"),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            event_type=PROCESSING_FAILED_AUDIT_EVENT,
            payload={
                "outboxEventId": str(row.id),
                "eventType": row.event_type,
                "error": error,
                "retries": row.retry_count,
                "originalPayload": payload,
            },
        )
        logger.error(
            "outbox event escalated after retries exhausted",
            extra={
                "outbox_id": str(row.id),
                "event_type": row.event_type,
                "entity_id": str(row.entity_id),
                "retries": row.retry_count,
            },
        )
        return EscalationNotice(
            outbox_event_id=row.id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            event_type=row.event_type,
            retries=row.retry_count,
            error=error,
        )
