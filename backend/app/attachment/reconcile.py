"""Outbox event handlers that reconcile attachment records with the blob store.

A handler either returns (the processor marks the event processed and commits
the handler's staged changes with it) or raises (the processor rolls back and
applies the retry/escalation policy). Handlers must be idempotent: an event can
be delivered again after a crash between the external call and the commit.
"""
from __future__ import annotations

import logging
from typing import Any

from app.attachment.blob_store import BlobMetadata
from app.attachment.fallback import decode_fallback
from app.attachment.models import Attachment, AttachmentStatus
from app.attachment.state import HIDDEN_STATUSES, lock_attachment, transition
from app.audit.service import record_audit_event
from app.outbox.repo import enqueue_event
from app.outbox.types import EntityType, EventType, HandlerContext

logger = logging.getLogger(__name__)

DRIFT_DETECTED_AUDIT_EVENT = "attachment.drift_detected"

UPLOADABLE_STATUSES = frozenset({AttachmentStatus.PENDING_UPLOAD, AttachmentStatus.ACTIVE})


class ReconcileError(RuntimeError):
    """A reconciliation step cannot make progress; the event goes through the retry path."""


def attachment_payload(attachment: Attachment) -> dict[str, Any]:
    """Event payload describing the external work owed for `attachment`."""
    return {
        "externalId": attachment.external_id,
        "fileName": attachment.file_name,
        "mimeType": attachment.mime_type,
        "size": attachment.size_bytes,
        "organizationId": attachment.organization_id,
        "ownerType": attachment.owner_type,
        "ownerId": attachment.owner_id,
    }


def _load_attachment(ctx: HandlerContext) -> Attachment | None:
    attachment = ctx.db.query(Attachment).filter(Attachment.id == ctx.event.entity_id).first()
    if attachment is None:
        logger.warning(
            "attachment not found for outbox event, skipping",
            extra={"outbox_id": str(ctx.event.id), "attachment_id": str(ctx.event.entity_id)},
        )
    return attachment


def _skip(ctx: HandlerContext, attachment: Attachment, reason: str) -> None:
    logger.info(
        "outbox event is a no-op",
        extra={
            "outbox_id": str(ctx.event.id),
            "event_type": ctx.event.event_type,
            "attachment_id": str(attachment.id),
            "status": attachment.status,
            "reason": reason,
        },
    )


def _upload_from_local_copy(ctx: HandlerContext, attachment: Attachment) -> None:
    attachment_id = attachment.id
    data = decode_fallback(attachment)
    if data is None:
        raise ReconcileError(f"attachment {attachment_id} has no local copy to upload from")

    external_id = ctx.blob_store.upload(
        data,
        BlobMetadata(
            attachment_id=attachment_id,
            organization_id=attachment.organization_id,
            owner_type=attachment.owner_type,
            file_name=attachment.file_name,
            mime_type=attachment.mime_type,
        ),
    )

    attachment = lock_attachment(ctx.db, attachment_id)
    if attachment is None or AttachmentStatus(attachment.status) in HIDDEN_STATUSES:
        _discard_upload(ctx, attachment, external_id)
        return
    if AttachmentStatus(attachment.status) not in UPLOADABLE_STATUSES:
        _skip(ctx, attachment, "status changed during upload")
        return

    attachment.external_id = external_id
    attachment.last_verified_at = ctx.now
    transition(attachment, AttachmentStatus.ACTIVE, now=ctx.now)
    logger.info(
        "attachment uploaded from local copy",
        extra={"outbox_id": str(ctx.event.id), "attachment_id": str(attachment_id), "external_id": external_id},
    )


def _discard_upload(ctx: HandlerContext, attachment: Attachment | None, external_id: str) -> None:
    """The record was deleted while its upload was in flight; schedule removal of the new object."""
    payload = attachment_payload(attachment) if attachment is not None else dict(ctx.event.payload or {})
    payload["externalId"] = external_id
    enqueue_event(
        ctx.db,
        event_type=EventType.DELETE_FILE,
        entity_type=EntityType.ATTACHMENT,
        entity_id=ctx.event.entity_id,
        payload=payload,
    )
    logger.warning(
        "attachment deleted during upload, scheduling object removal",
        extra={"outbox_id": str(ctx.event.id), "attachment_id": str(ctx.event.entity_id), "external_id": external_id},
    )


def handle_upload_success(ctx: HandlerContext) -> None:
    """Confirm an inline upload actually landed; demote and schedule a repair when it did not."""
    attachment = _load_attachment(ctx)
    if attachment is None:
        return

    status = AttachmentStatus(attachment.status)
    if status != AttachmentStatus.ACTIVE:
        _skip(ctx, attachment, "not active")
        return

    external_id = (ctx.event.payload or {}).get("externalId") or attachment.external_id
    if not external_id:
        _skip(ctx, attachment, "no external id")
        return

    present = ctx.blob_store.exists(external_id)

    attachment = lock_attachment(ctx.db, attachment.id)
    if attachment is None or AttachmentStatus(attachment.status) != AttachmentStatus.ACTIVE:
        return
    if present:
        attachment.last_verified_at = ctx.now
        return

    logger.warning(
        "drift detected: external object missing",
        extra={"outbox_id": str(ctx.event.id), "attachment_id": str(attachment.id), "external_id": external_id},
    )
    transition(attachment, AttachmentStatus.PENDING_UPLOAD, now=ctx.now)
    enqueue_event(
        ctx.db,
        event_type=EventType.REPAIR_UPLOAD,
        entity_type=EntityType.ATTACHMENT,
        entity_id=attachment.id,
        payload=dict(ctx.event.payload or {}),
    )
    record_audit_event(
        ctx.db,
        organization_id=attachment.organization_id,
        entity_type=EntityType.ATTACHMENT,
        entity_id=attachment.id,
        event_type=DRIFT_DETECTED_AUDIT_EVENT,
        payload={"externalId": external_id, "outboxEventId": str(ctx.event.id)},
    )


def handle_verify_upload(ctx: HandlerContext) -> None:
    attachment = _load_attachment(ctx)
    if attachment is None:
        return

    status = AttachmentStatus(attachment.status)
    if status == AttachmentStatus.ACTIVE and attachment.external_id:
        _skip(ctx, attachment, "already confirmed")
        return
    if status not in UPLOADABLE_STATUSES:
        _skip(ctx, attachment, "not awaiting upload")
        return

    _upload_from_local_copy(ctx, attachment)


def handle_repair_upload(ctx: HandlerContext) -> None:
    attachment = _load_attachment(ctx)
    if attachment is None:
        return

    if AttachmentStatus(attachment.status) not in UPLOADABLE_STATUSES:
        _skip(ctx, attachment, "not repairable")
        return

    _upload_from_local_copy(ctx, attachment)


def handle_delete_file(ctx: HandlerContext) -> None:
    """Remove the external copy, then finish the local deletion.

    A missing object counts as deleted; any other adapter error propagates.
    """
    attachment = ctx.db.query(Attachment).filter(Attachment.id == ctx.event.entity_id).first()
    external_id = (ctx.event.payload or {}).get("externalId")
    if not external_id and attachment is not None:
        external_id = attachment.external_id

    if external_id:
        ctx.blob_store.delete(external_id)

    attachment = lock_attachment(ctx.db, ctx.event.entity_id)
    if attachment is not None and AttachmentStatus(attachment.status) == AttachmentStatus.PENDING_DELETE:
        transition(attachment, AttachmentStatus.DELETED, now=ctx.now)


def fail_attachment_upload(ctx: HandlerContext, error: str) -> None:
    """Exhaustion hook for VERIFY_UPLOAD / REPAIR_UPLOAD."""
    attachment = lock_attachment(ctx.db, ctx.event.entity_id)
    if attachment is None:
        return
    if AttachmentStatus(attachment.status) in UPLOADABLE_STATUSES:
        transition(attachment, AttachmentStatus.FAILED, now=ctx.now)


def finish_attachment_delete(ctx: HandlerContext, error: str) -> None:
    """Exhaustion hook for DELETE_FILE: the local record is deleted even if the object is not."""
    attachment = lock_attachment(ctx.db, ctx.event.entity_id)
    if attachment is None:
        return
    if AttachmentStatus(attachment.status) == AttachmentStatus.PENDING_DELETE:
        transition(attachment, AttachmentStatus.DELETED, now=ctx.now)
        logger.warning(
            "attachment marked deleted with external copy possibly remaining",
            extra={"attachment_id": str(attachment.id), "external_id": attachment.external_id, "error": error},
        )
