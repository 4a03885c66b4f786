from __future__ import annotations

import logging
from datetime import timedelta
from threading import Event

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.common.time import utcnow
from app.config import get_settings
from app.database import SessionLocal
from app.outbox.processor import OutboxProcessor, build_processor_config
from app.outbox.service import cleanup_old_events

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

# Set on shutdown; a batch in progress stops before its next event.
_shutdown_event = Event()


def process_outbox_job(processor: OutboxProcessor):
    """Drain one outbox batch."""
    try:
        result = processor.process_pending_events(stop_event=_shutdown_event)
        if result.processed or result.failed:
            logger.info(
                "outbox job finished processed=%s failed=%s skipped=%s",
                result.processed,
                result.failed,
                result.skipped,
            )
    except Exception:
        logger.exception("Failed to process outbox events")


def cleanup_outbox_job(retention_days: int):
    """Purge processed outbox events past the retention window."""
    db = SessionLocal()
    try:
        cleanup_old_events(db, older_than=utcnow() - timedelta(days=retention_days))
    except Exception:
        logger.exception("Failed to clean up outbox events")
    finally:
        db.close()


def setup_scheduler(processor: OutboxProcessor | None = None):
    """Setup and start the scheduler."""
    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled")
        return

    _shutdown_event.clear()
    processor = processor or OutboxProcessor(build_processor_config())

    scheduler.add_job(
        process_outbox_job,
        IntervalTrigger(seconds=settings.outbox_process_interval_sec),
        args=[processor],
        id="outbox_process",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        cleanup_outbox_job,
        CronTrigger(hour=settings.outbox_cleanup_hour, minute=0, timezone="UTC"),
        args=[settings.outbox_retention_days],
        id="outbox_cleanup",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info("Scheduler started")


def shutdown_scheduler():
    """Shutdown the scheduler and stop any batch still running."""
    _shutdown_event.set()
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
