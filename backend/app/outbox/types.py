"""Type definitions for the outbox processor."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.attachment.blob_store import BlobStore
    from app.outbox.models import OutboxEvent


class EventType:
    UPLOAD_SUCCESS = "UPLOAD_SUCCESS"
    VERIFY_UPLOAD = "VERIFY_UPLOAD"
    REPAIR_UPLOAD = "REPAIR_UPLOAD"
    DELETE_FILE = "DELETE_FILE"


class EntityType:
    ATTACHMENT = "Attachment"


PROCESSING_FAILED_AUDIT_EVENT = "outbox.processing.failed"


@dataclass(frozen=True)
class ProcessorConfig:
    """Configuration for one OutboxProcessor instance."""

    batch_size: int = 50
    max_retries: int = 3
    lock_ttl_sec: int = 300
    backoff_base_sec: float = 0.0
    backoff_cap_sec: float = 300.0
    worker_id: str = "outbox-processor"


@dataclass(frozen=True)
class ProcessingError:
    event_id: UUID
    error: str


@dataclass
class ProcessingResult:
    """Aggregate outcome of one `process_pending_events()` run."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    unsupported: int = 0
    errors: list[ProcessingError] = field(default_factory=list)


@dataclass(frozen=True)
class OutboxStats:
    total: int
    unprocessed: int
    failed: int
    processed: int


@dataclass(frozen=True)
class HandlerContext:
    """What an event handler gets: the open session, the claimed event and the blob store."""

    db: Session
    event: OutboxEvent
    blob_store: BlobStore
    now: datetime
