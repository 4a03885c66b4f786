"""Attachment lifecycle state machine.

Main line: pending_upload -> active -> pending_delete -> deleted.
Drift sends active back to pending_upload; exhausted reconciliation moves
pending_upload/active to failed, and a manual retry moves failed back to
pending_upload.

Every status change on an Attachment goes through `transition()` so that an
illegal move (for example an upload failure silently deleting a record) fails
loudly instead of corrupting the lifecycle.
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from app.attachment.models import Attachment, AttachmentStatus
from app.common.time import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[AttachmentStatus, frozenset[AttachmentStatus]] = {
    AttachmentStatus.PENDING_UPLOAD: frozenset(
        {AttachmentStatus.ACTIVE, AttachmentStatus.PENDING_DELETE, AttachmentStatus.FAILED}
    ),
    AttachmentStatus.ACTIVE: frozenset(
        {AttachmentStatus.PENDING_UPLOAD, AttachmentStatus.PENDING_DELETE, AttachmentStatus.FAILED}
    ),
    AttachmentStatus.PENDING_DELETE: frozenset({AttachmentStatus.DELETED}),
    AttachmentStatus.FAILED: frozenset({AttachmentStatus.PENDING_UPLOAD, AttachmentStatus.PENDING_DELETE}),
    AttachmentStatus.DELETED: frozenset(),
}

# Statuses a deletion request may start from.
DELETABLE_STATUSES = frozenset(
    {AttachmentStatus.PENDING_UPLOAD, AttachmentStatus.ACTIVE, AttachmentStatus.FAILED}
)

# Statuses hidden from every read path.
HIDDEN_STATUSES = frozenset({AttachmentStatus.PENDING_DELETE, AttachmentStatus.DELETED})


class InvalidStatusTransition(RuntimeError):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, current: AttachmentStatus, target: AttachmentStatus) -> None:
        super().__init__(f"Illegal attachment status transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class ServableInvariantError(RuntimeError):
    """An active attachment has no durable copy anywhere."""


def can_transition(current: AttachmentStatus, target: AttachmentStatus) -> bool:
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def transition(attachment: Attachment, target: AttachmentStatus, *, now: datetime | None = None) -> bool:
    """Move `attachment` to `target`.

    Returns:
        True if the status changed, False for a same-state no-op

    Raises:
        InvalidStatusTransition: If the lifecycle does not allow the move
    """
    current = AttachmentStatus(attachment.status)
    if current == target:
        return False
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(current, target)

    attachment.status = target
    if target == AttachmentStatus.DELETED:
        attachment.deleted_at = now or utcnow()
    if target == AttachmentStatus.ACTIVE:
        ensure_servable_invariant(attachment)

    logger.info(
        "attachment status changed",
        extra={"attachment_id": str(attachment.id), "from": current.value, "to": target.value},
    )
    return True


def ensure_servable_invariant(attachment: Attachment) -> None:
    if AttachmentStatus(attachment.status) != AttachmentStatus.ACTIVE:
        return
    if attachment.external_id or attachment.fallback_bytes is not None:
        return
    raise ServableInvariantError(f"Active attachment {attachment.id} has neither external_id nor fallback bytes")


def lock_attachment(db: Session, attachment_id: UUID) -> Attachment | None:
    """Re-read the row under a row lock, replacing whatever the session already holds.

    Callers that made a slow blob store call since their first read must go
    through this before changing the status, so a delete committed in the
    meantime is seen instead of overwritten.
    """
    return (
        db.query(Attachment)
        .filter(Attachment.id == attachment_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
