"""Outbox worker for draining attachment reconciliation events.

Usage:
    python -m app.outbox.worker          # poll until SIGINT/SIGTERM
    python -m app.outbox.worker --once   # process one batch and exit

On a shutdown signal the in-flight handler finishes, the rest of the claimed
batch is released, and the process exits.
"""
from __future__ import annotations

import argparse
import logging
import signal
from threading import Event

from app.config import get_settings
from app.outbox.processor import OutboxProcessor, build_processor_config

logger = logging.getLogger(__name__)


class Worker:
    """Polling loop around one OutboxProcessor."""

    def __init__(self, processor: OutboxProcessor, *, poll_interval_ms: int) -> None:
        self.processor = processor
        self.poll_interval_ms = poll_interval_ms

    def run_forever(self, stop_event: Event) -> int:
        """Run the worker loop until stop_event is set.

        Returns:
            Exit code (0 for normal shutdown)
        """
        cfg = self.processor.cfg
        logger.info(
            "outbox worker starting",
            extra={
                "worker_id": cfg.worker_id,
                "poll_interval_ms": self.poll_interval_ms,
                "batch_size": cfg.batch_size,
                "max_retries": cfg.max_retries,
                "lock_ttl_sec": cfg.lock_ttl_sec,
            },
        )

        while not stop_event.is_set():
            try:
                handled = self.run_once(stop_event)
                if handled == 0:
                    stop_event.wait(self.poll_interval_ms / 1000.0)
            except Exception:
                logger.exception("outbox worker run_once error")
                # Wait before retrying to avoid tight error loop
                stop_event.wait(self.poll_interval_ms / 1000.0)

        logger.info("outbox worker stopped", extra={"worker_id": cfg.worker_id})
        return 0

    def run_once(self, stop_event: Event | None = None) -> int:
        """Process one batch.

        Returns:
            Number of events processed or failed in this batch
        """
        result = self.processor.process_pending_events(stop_event=stop_event)
        return result.processed + result.failed


def main(argv: list[str] | None = None) -> None:
    import app.attachment.models  # noqa: F401
    import app.audit.models  # noqa: F401

    parser = argparse.ArgumentParser(prog="python -m app.outbox.worker")
    parser.add_argument("--once", action="store_true", help="process a single batch and exit")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    worker = Worker(
        OutboxProcessor(build_processor_config()),
        poll_interval_ms=settings.outbox_worker_poll_interval_ms,
    )

    if args.once:
        result = worker.processor.process_pending_events()
        logger.info(
            "outbox run finished processed=%s failed=%s skipped=%s",
            result.processed,
            result.failed,
            result.skipped,
        )
        raise SystemExit(0)

    stop_event = Event()

    def handle_signal(signum, _frame):
        logger.info("signal received", extra={"signal": signum})
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    exit_code = worker.run_forever(stop_event)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
