from __future__ import annotations

import logging
import uuid
from typing import List
from uuid import UUID

from fastapi import UploadFile
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.attachment.blob_store import BlobMetadata, BlobStore, BlobStoreError, get_blob_store
from app.attachment.fallback import encode_fallback
from app.attachment.models import Attachment, AttachmentStatus
from app.attachment.reconcile import DRIFT_DETECTED_AUDIT_EVENT, attachment_payload
from app.attachment.schemas import (
    AttachmentStatsResponse,
    ReassociateResponse,
    VerifyBatchResponse,
    VerifyResponse,
)
from app.attachment.state import DELETABLE_STATUSES, HIDDEN_STATUSES, lock_attachment, transition
from app.audit.service import record_audit_event
from app.common.exceptions import ApiException, ErrorCode
from app.common.storage import StorageError
from app.common.time import utcnow
from app.config import get_settings
from app.outbox.repo import enqueue_event
from app.outbox.types import EntityType, EventType

logger = logging.getLogger(__name__)

UPLOADED_AUDIT_EVENT = "attachment.uploaded"
DELETED_AUDIT_EVENT = "attachment.deleted"
REASSOCIATED_AUDIT_EVENT = "attachment.reassociated"


class AttachmentService:
    def __init__(self, db: Session, *, blob_store: BlobStore | None = None):
        self.db = db
        self._blob_store = blob_store

    def _get_blob_store(self) -> BlobStore:
        if self._blob_store is None:
            self._blob_store = get_blob_store()
        return self._blob_store

    def _enqueue(self, attachment: Attachment, event_type: str, **extra) -> None:
        payload = attachment_payload(attachment)
        payload.update(extra)
        enqueue_event(
            self.db,
            event_type=event_type,
            entity_type=EntityType.ATTACHMENT,
            entity_id=attachment.id,
            payload=payload,
        )

    def _audit(self, attachment: Attachment, event_type: str, payload: dict) -> None:
        record_audit_event(
            self.db,
            organization_id=attachment.organization_id,
            entity_type=EntityType.ATTACHMENT,
            entity_id=attachment.id,
            event_type=event_type,
            payload=payload,
        )

    def find_by_id(self, id: UUID, *, for_update: bool = False) -> Attachment:
        query = self.db.query(Attachment).filter(Attachment.id == id)
        if for_update:
            query = query.with_for_update()
        attachment = query.first()
        if not attachment or AttachmentStatus(attachment.status) in HIDDEN_STATUSES:
            raise ApiException(status_code=404, code=ErrorCode.NOT_FOUND, message=f"Attachment not found: {id}")
        return attachment

    def find_by_owner(
        self,
        owner_type: str,
        owner_id: str,
        *,
        organization_id: str | None = None,
    ) -> List[Attachment]:
        query = self.db.query(Attachment).filter(
            Attachment.owner_type == owner_type,
            Attachment.owner_id == owner_id,
            Attachment.status == AttachmentStatus.ACTIVE,
        )
        if organization_id:
            query = query.filter(Attachment.organization_id == organization_id)
        return query.order_by(Attachment.created_at.desc()).all()

    async def upload(
        self,
        *,
        organization_id: str,
        owner_type: str,
        owner_id: str,
        file: UploadFile,
        uploaded_by: str | None = None,
    ) -> Attachment:
        """Store a new attachment.

        The external upload is attempted inline. On success the record is
        `active` and an UPLOAD_SUCCESS event confirms it later; on failure the
        record is `pending_upload` and a VERIFY_UPLOAD event retries it from the
        local copy. Without room for a local copy a failed upload is refused.
        """
        settings = get_settings()
        data = await file.read()
        file_size = len(data)

        max_size_bytes = settings.attachment_max_file_size_mb * 1024 * 1024
        if file_size > max_size_bytes:
            raise ApiException(
                status_code=413,
                code=ErrorCode.FILE_TOO_LARGE,
                message=f"File too large. Maximum size is {settings.attachment_max_file_size_mb}MB",
            )

        attachment_id = uuid.uuid4()
        file_name = file.filename or "file"
        mime_type = file.content_type or "application/octet-stream"

        fallback_bytes = None
        fallback_encoding = None
        if file_size <= settings.attachment_fallback_max_bytes:
            fallback_bytes, fallback_encoding = encode_fallback(data, mime_type)

        external_id: str | None = None
        upload_error: str | None = None
        try:
            external_id = self._get_blob_store().upload(
                data,
                BlobMetadata(
                    attachment_id=attachment_id,
                    organization_id=organization_id,
                    owner_type=owner_type,
                    file_name=file_name,
                    mime_type=mime_type,
                ),
            )
        except (BlobStoreError, StorageError) as exc:
            upload_error = str(exc)
            logger.warning(
                "inline upload failed, deferring to outbox",
                extra={"attachment_id": str(attachment_id), "error": upload_error},
            )

        if external_id is None and fallback_bytes is None:
            raise ApiException(
                status_code=503,
                code=ErrorCode.STORAGE_UNAVAILABLE,
                message="Storage service unavailable and file too large for deferred upload",
            )

        now = utcnow()
        attachment = Attachment(
            id=attachment_id,
            organization_id=organization_id,
            owner_type=owner_type,
            owner_id=owner_id,
            file_name=file_name,
            mime_type=mime_type,
            size_bytes=file_size,
            fallback_bytes=fallback_bytes,
            fallback_encoding=fallback_encoding,
            fallback_available=fallback_bytes is not None,
            status=AttachmentStatus.PENDING_UPLOAD,
            uploaded_by=uploaded_by,
        )
        if external_id is not None:
            attachment.external_id = external_id
            attachment.last_verified_at = now
            transition(attachment, AttachmentStatus.ACTIVE, now=now)

        try:
            self.db.add(attachment)
            self._enqueue(
                attachment,
                EventType.UPLOAD_SUCCESS if external_id else EventType.VERIFY_UPLOAD,
            )
            self._audit(
                attachment,
                UPLOADED_AUDIT_EVENT,
                {
                    "fileName": file_name,
                    "size": file_size,
                    "status": attachment.status.value,
                    "externalId": external_id,
                    "uploadError": upload_error,
                    "uploadedBy": uploaded_by,
                },
            )
            self.db.commit()
            self.db.refresh(attachment)
        except Exception as exc:
            self.db.rollback()
            if external_id:
                # Best-effort cleanup of the object nothing refers to.
                try:
                    self._get_blob_store().delete(external_id)
                except BlobStoreError:
                    logger.warning("orphaned object cleanup failed", extra={"external_id": external_id})
            raise ApiException(
                status_code=500,
                code=ErrorCode.METADATA_SAVE_FAILED,
                message="Failed to save attachment metadata",
            ) from exc

        logger.info(
            "attachment uploaded",
            extra={"attachment_id": str(attachment.id), "status": attachment.status.value},
        )
        return attachment

    def delete(self, id: UUID, *, deleted_by: str | None = None) -> Attachment:
        attachment = self.find_by_id(id, for_update=True)
        if AttachmentStatus(attachment.status) not in DELETABLE_STATUSES:
            raise ApiException(
                status_code=409,
                code=ErrorCode.STATUS_CONFLICT,
                message=f"Attachment cannot be deleted in status {attachment.status.value}",
            )

        now = utcnow()
        transition(attachment, AttachmentStatus.PENDING_DELETE, now=now)
        if attachment.external_id:
            self._enqueue(attachment, EventType.DELETE_FILE, deletedBy=deleted_by)
        else:
            # Nothing external to remove.
            transition(attachment, AttachmentStatus.DELETED, now=now)

        self._audit(
            attachment,
            DELETED_AUDIT_EVENT,
            {
                "deletedBy": deleted_by,
                "externalId": attachment.external_id,
                "status": attachment.status.value,
            },
        )
        self.db.commit()
        self.db.refresh(attachment)
        return attachment

    def reassociate(
        self,
        *,
        organization_id: str,
        temporary_owner_type: str,
        temporary_owner_id: str,
        actual_owner_type: str,
        actual_owner_id: str,
    ) -> ReassociateResponse:
        """Move attachments uploaded against a temporary owner to the real one."""
        if (temporary_owner_type, temporary_owner_id) == (actual_owner_type, actual_owner_id):
            raise ApiException(
                status_code=400,
                code=ErrorCode.VALIDATION_FAILED,
                message="Temporary and actual owner must differ",
            )

        attachments = (
            self.db.query(Attachment)
            .filter(
                Attachment.organization_id == organization_id,
                Attachment.owner_type == temporary_owner_type,
                Attachment.owner_id == temporary_owner_id,
                Attachment.status.notin_(list(HIDDEN_STATUSES)),
            )
            .order_by(Attachment.created_at.asc())
            .with_for_update()
            .all()
        )

        for attachment in attachments:
            attachment.owner_type = actual_owner_type
            attachment.owner_id = actual_owner_id
            self._enqueue(attachment, EventType.VERIFY_UPLOAD)
            self._audit(
                attachment,
                REASSOCIATED_AUDIT_EVENT,
                {
                    "from": {"ownerType": temporary_owner_type, "ownerId": temporary_owner_id},
                    "to": {"ownerType": actual_owner_type, "ownerId": actual_owner_id},
                },
            )

        self.db.commit()
        logger.info(
            "attachments reassociated count=%s organization_id=%s",
            len(attachments),
            organization_id,
        )
        return ReassociateResponse(count=len(attachments), attachment_ids=[a.id for a in attachments])

    def retry_upload(self, id: UUID) -> Attachment:
        attachment = self.find_by_id(id, for_update=True)

        if AttachmentStatus(attachment.status) != AttachmentStatus.FAILED:
            raise ApiException(
                status_code=400,
                code=ErrorCode.NOT_ELIGIBLE,
                message="Only failed attachments can be retried",
            )
        if attachment.fallback_bytes is None:
            raise ApiException(
                status_code=400,
                code=ErrorCode.NOT_ELIGIBLE,
                message="Attachment has no local copy to upload from",
            )

        transition(attachment, AttachmentStatus.PENDING_UPLOAD)
        self._enqueue(attachment, EventType.VERIFY_UPLOAD)
        self.db.commit()
        self.db.refresh(attachment)
        return attachment

    def _check_external(self, attachment: Attachment) -> bool | None:
        """Compare the record with the blob store and fix up its status. Does not commit.

        Returns:
            True if the external object exists, False if it is missing, None if
            the record has no external copy to check
        """
        if not attachment.external_id:
            return None

        present = self._get_blob_store().exists(attachment.external_id)

        # The check may be slow; act on the row as it is now, not as it was read.
        current = lock_attachment(self.db, attachment.id)
        if current is None or AttachmentStatus(current.status) in HIDDEN_STATUSES:
            return None

        now = utcnow()
        if present:
            attachment.last_verified_at = now
            if AttachmentStatus(attachment.status) == AttachmentStatus.PENDING_UPLOAD:
                transition(attachment, AttachmentStatus.ACTIVE, now=now)
            return True

        if AttachmentStatus(attachment.status) == AttachmentStatus.ACTIVE:
            if attachment.fallback_bytes is not None:
                transition(attachment, AttachmentStatus.PENDING_UPLOAD, now=now)
                self._enqueue(attachment, EventType.REPAIR_UPLOAD)
            else:
                transition(attachment, AttachmentStatus.FAILED, now=now)
            self._audit(
                attachment,
                DRIFT_DETECTED_AUDIT_EVENT,
                {"externalId": attachment.external_id, "status": attachment.status.value},
            )
            logger.warning(
                "drift detected on verification",
                extra={"attachment_id": str(attachment.id), "status": attachment.status.value},
            )
        return False

    def verify(self, id: UUID) -> VerifyResponse:
        attachment = self.find_by_id(id)
        previous_status = AttachmentStatus(attachment.status)

        try:
            exists = self._check_external(attachment)
        except (BlobStoreError, StorageError) as exc:
            self.db.rollback()
            raise ApiException(
                status_code=503,
                code=ErrorCode.STORAGE_UNAVAILABLE,
                message="Storage service unavailable",
            ) from exc

        self.db.commit()
        self.db.refresh(attachment)
        return VerifyResponse(
            verified=bool(exists),
            status=attachment.status,
            previous_status=previous_status,
        )

    def verify_batch(self, *, organization_id: str | None = None, limit: int = 100) -> VerifyBatchResponse:
        """Verify active attachments, least recently verified first."""
        query = self.db.query(Attachment).filter(
            Attachment.status == AttachmentStatus.ACTIVE,
            Attachment.external_id.isnot(None),
        )
        if organization_id:
            query = query.filter(Attachment.organization_id == organization_id)
        candidates = (
            query.order_by(
                Attachment.last_verified_at.isnot(None),
                Attachment.last_verified_at.asc(),
                Attachment.created_at.asc(),
            )
            .limit(limit)
            .all()
        )

        result = VerifyBatchResponse()
        for attachment in candidates:
            result.checked += 1
            attachment_id = attachment.id
            try:
                exists = self._check_external(attachment)
                self.db.commit()
            except (BlobStoreError, StorageError) as exc:
                self.db.rollback()
                result.errors += 1
                logger.warning(
                    "verification failed",
                    extra={"attachment_id": str(attachment_id), "error": str(exc)},
                )
                continue
            if exists:
                result.verified += 1
            elif exists is False:
                result.drifted += 1

        logger.info(
            "verify batch done checked=%s verified=%s drifted=%s errors=%s",
            result.checked,
            result.verified,
            result.drifted,
            result.errors,
        )
        return result

    def get_stats(self, organization_id: str) -> AttachmentStatsResponse:
        counts = dict(
            self.db.query(Attachment.status, func.count(Attachment.id))
            .filter(Attachment.organization_id == organization_id)
            .group_by(Attachment.status)
            .all()
        )
        by_status = {status.value: int(counts.get(status, 0) or 0) for status in AttachmentStatus}

        visible = self.db.query(Attachment).filter(
            Attachment.organization_id == organization_id,
            Attachment.status.notin_(list(HIDDEN_STATUSES)),
        )
        total_bytes = visible.with_entities(func.coalesce(func.sum(Attachment.size_bytes), 0)).scalar() or 0
        fallback_available = (
            visible.filter(Attachment.fallback_available.is_(True)).with_entities(func.count(Attachment.id)).scalar()
            or 0
        )

        return AttachmentStatsResponse(
            organization_id=organization_id,
            total=sum(by_status.values()) - by_status[AttachmentStatus.DELETED.value],
            total_bytes=int(total_bytes),
            fallback_available=int(fallback_available),
            by_status=by_status,
        )

    def get_download_url(self, attachment: Attachment) -> str | None:
        """Presigned CDN URL for a confirmed attachment, or None when the caller should fall back."""
        if AttachmentStatus(attachment.status) != AttachmentStatus.ACTIVE or not attachment.external_id:
            return None
        try:
            return self._get_blob_store().presigned_url(attachment.external_id)
        except (BlobStoreError, StorageError) as exc:
            logger.warning(
                "presign failed, falling back to local copy",
                extra={"attachment_id": str(attachment.id), "error": str(exc)},
            )
            return None
