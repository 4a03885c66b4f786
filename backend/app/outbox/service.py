from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.common.time import utcnow
from app.outbox.repo import OutboxRepo
from app.outbox.types import OutboxStats

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


def get_outbox_stats(db: Session, *, max_retries: int) -> OutboxStats:
    """Event counts; `failed` includes escalated events even though they are processed."""
    return OutboxRepo(db).stats(max_retries=max_retries)


def cleanup_old_events(db: Session, *, older_than: datetime | None = None) -> int:
    """Purge processed events whose processed_at is before `older_than` (default: 30 days ago)."""
    cutoff = older_than or utcnow() - timedelta(days=DEFAULT_RETENTION_DAYS)
    deleted = OutboxRepo(db).cleanup_processed(older_than=cutoff)
    logger.info("outbox cleanup deleted=%s cutoff=%s", deleted, cutoff.isoformat())
    return deleted
