"""Local copy of attachment content kept in the relational store.

The copy lets reads survive an unreachable CDN and lets the outbox processor
re-upload a file whose external object went missing.
"""
from __future__ import annotations

import gzip
import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from app.attachment.models import Attachment, AttachmentStatus, FallbackEncoding
from app.attachment.state import HIDDEN_STATUSES
from app.common.exceptions import ApiException, ErrorCode

logger = logging.getLogger(__name__)

FALLBACK_SOURCE = "postgres"

_TEXT_LIKE_TYPES = frozenset(
    {
        "application/pdf",
        "application/json",
        "application/xml",
        "application/javascript",
    }
)


def is_compressible(mime_type: str | None) -> bool:
    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    if mime.startswith("text/"):
        return True
    if mime.endswith("+xml") or mime.endswith("+json"):
        return True
    return mime in _TEXT_LIKE_TYPES


def encode_fallback(data: bytes, mime_type: str | None) -> tuple[bytes, FallbackEncoding]:
    if is_compressible(mime_type):
        return gzip.compress(data), FallbackEncoding.GZIP
    return data, FallbackEncoding.RAW


def decode_fallback(attachment: Attachment) -> bytes | None:
    """Return the original file bytes from the local copy, or None if there is none."""
    if attachment.fallback_bytes is None:
        return None
    encoding = FallbackEncoding(attachment.fallback_encoding or FallbackEncoding.RAW)
    if encoding == FallbackEncoding.GZIP:
        return gzip.decompress(attachment.fallback_bytes)
    return bytes(attachment.fallback_bytes)


@dataclass(frozen=True)
class ServableContent:
    data: bytes
    mime_type: str
    file_name: str
    source: str = FALLBACK_SOURCE


class FallbackReader:
    """Serves attachment bytes straight from the relational store."""

    def __init__(self, db: Session):
        self.db = db

    def get_servable_bytes(self, attachment_id: UUID) -> ServableContent:
        attachment = self.db.query(Attachment).filter(Attachment.id == attachment_id).first()
        if not attachment or AttachmentStatus(attachment.status) in HIDDEN_STATUSES:
            raise ApiException(status_code=404, code=ErrorCode.NOT_FOUND, message="Attachment not found")

        try:
            data = decode_fallback(attachment)
        except (OSError, EOFError) as exc:
            logger.error(
                "fallback copy is corrupt",
                extra={"attachment_id": str(attachment_id), "error": str(exc)},
            )
            raise ApiException(
                status_code=500,
                code=ErrorCode.INTERNAL,
                message="Fallback copy could not be decoded",
            ) from exc

        if data is None:
            raise ApiException(
                status_code=404,
                code=ErrorCode.FALLBACK_UNAVAILABLE,
                message="No fallback copy available for this attachment",
            )

        logger.info(
            "serving attachment from fallback",
            extra={"attachment_id": str(attachment_id), "source": FALLBACK_SOURCE, "status": attachment.status},
        )
        return ServableContent(
            data=data,
            mime_type=attachment.mime_type or "application/octet-stream",
            file_name=attachment.file_name,
        )
