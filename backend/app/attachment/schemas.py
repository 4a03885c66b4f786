from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field

from app.attachment.models import AttachmentStatus
from app.common.schemas import CamelModel, OrmModel


class AttachmentResponse(OrmModel):
    id: UUID
    organization_id: str
    owner_type: str
    owner_id: str
    file_name: str
    mime_type: str
    size_bytes: int
    status: AttachmentStatus
    external_id: str | None = None
    fallback_available: bool = False
    last_verified_at: datetime | None = None
    uploaded_by: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class ReassociateRequest(CamelModel):
    organization_id: str = Field(min_length=1, max_length=64)
    temporary_owner_type: str = Field(min_length=1, max_length=64)
    temporary_owner_id: str = Field(min_length=1, max_length=64)
    actual_owner_type: str = Field(min_length=1, max_length=64)
    actual_owner_id: str = Field(min_length=1, max_length=64)


class ReassociateResponse(CamelModel):
    count: int
    attachment_ids: list[UUID]


class VerifyResponse(CamelModel):
    verified: bool
    status: AttachmentStatus
    previous_status: AttachmentStatus


class VerifyBatchRequest(CamelModel):
    organization_id: str | None = None
    limit: int = Field(default=100, ge=1, le=500)


class VerifyBatchResponse(CamelModel):
    checked: int = 0
    verified: int = 0
    drifted: int = 0
    errors: int = 0


class AttachmentStatsResponse(CamelModel):
    organization_id: str
    total: int
    total_bytes: int
    fallback_available: int
    by_status: dict[str, int]
