from __future__ import annotations

import enum

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Enum, Index, LargeBinary, String

from app.common.models import TimestampMixin, UuidPrimaryKeyMixin
from app.database import Base


class AttachmentStatus(str, enum.Enum):
    PENDING_UPLOAD = "pending_upload"
    ACTIVE = "active"
    PENDING_DELETE = "pending_delete"
    DELETED = "deleted"
    FAILED = "failed"


class FallbackEncoding(str, enum.Enum):
    GZIP = "gzip"
    RAW = "raw"


class Attachment(UuidPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "attachment"

    # Polymorphic lookup key of the owning business entity; no FK on purpose.
    organization_id = Column(String(64), nullable=False)
    owner_type = Column(String(64), nullable=False)
    owner_id = Column(String(64), nullable=False)

    file_name = Column(String(255), nullable=False)
    mime_type = Column(String(128), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)

    # Local copy in the relational store, served when the CDN copy is missing or unconfirmed
    fallback_bytes = Column(LargeBinary, nullable=True)
    fallback_encoding = Column(
        Enum(FallbackEncoding, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    fallback_available = Column(Boolean, nullable=False, default=False)

    # External (CDN / object store) linkage
    external_id = Column(String(512), nullable=True)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        Enum(AttachmentStatus, native_enum=False, length=20, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AttachmentStatus.PENDING_UPLOAD,
    )
    uploaded_by = Column(String(64), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_attachment_owner", "organization_id", "owner_type", "owner_id"),
        Index("idx_attachment_status", "status"),
        Index("idx_attachment_external_id", "external_id"),
    )
