from __future__ import annotations

from urllib.parse import quote
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import RedirectResponse, Response
from sqlalchemy.orm import Session

from app.attachment.fallback import FallbackReader, ServableContent
from app.attachment.schemas import AttachmentResponse, ReassociateRequest, VerifyBatchRequest
from app.attachment.service import AttachmentService
from app.common.schemas import ApiResponse
from app.database import get_db

router = APIRouter(prefix="/api/attachments", tags=["attachments"])


def get_attachment_service(db: Session = Depends(get_db)) -> AttachmentService:
    return AttachmentService(db)


def _attachment_to_response(attachment) -> dict:
    return AttachmentResponse.model_validate(attachment).model_dump(by_alias=True)


def _fallback_response(content: ServableContent) -> Response:
    return Response(
        content=content.data,
        media_type=content.mime_type,
        headers={
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(content.file_name, safe='')}",
            "X-Fallback-Source": content.source,
            "Cache-Control": "no-store, must-revalidate",
        },
    )


@router.post("/upload", response_model=ApiResponse)
async def upload_attachment(
    file: UploadFile = File(...),
    organization_id: str = Form(..., alias="organizationId", min_length=1, max_length=64),
    owner_type: str = Form(..., alias="ownerType", min_length=1, max_length=64),
    owner_id: str = Form(..., alias="ownerId", min_length=1, max_length=64),
    uploaded_by: str | None = Form(default=None, alias="uploadedBy"),
    service: AttachmentService = Depends(get_attachment_service),
) -> ApiResponse:
    attachment = await service.upload(
        organization_id=organization_id,
        owner_type=owner_type,
        owner_id=owner_id,
        file=file,
        uploaded_by=uploaded_by,
    )
    return ApiResponse.ok(_attachment_to_response(attachment))


@router.get("/stats", response_model=ApiResponse)
def get_attachment_stats(
    organization_id: str = Query(..., alias="organizationId", min_length=1),
    service: AttachmentService = Depends(get_attachment_service),
) -> ApiResponse:
    stats = service.get_stats(organization_id)
    return ApiResponse.ok(stats.model_dump(by_alias=True))


@router.post("/reassociate", response_model=ApiResponse)
def reassociate_attachments(
    body: ReassociateRequest,
    service: AttachmentService = Depends(get_attachment_service),
) -> ApiResponse:
    result = service.reassociate(
        organization_id=body.organization_id,
        temporary_owner_type=body.temporary_owner_type,
        temporary_owner_id=body.temporary_owner_id,
        actual_owner_type=body.actual_owner_type,
        actual_owner_id=body.actual_owner_id,
    )
    return ApiResponse.ok(result.model_dump(by_alias=True))


@router.post("/verify-batch", response_model=ApiResponse)
def verify_attachments_batch(
    body: VerifyBatchRequest | None = None,
    service: AttachmentService = Depends(get_attachment_service),
) -> ApiResponse:
    body = body or VerifyBatchRequest()
    result = service.verify_batch(organization_id=body.organization_id, limit=body.limit)
    return ApiResponse.ok(result.model_dump(by_alias=True))


@router.get("/owner/{owner_type}/{owner_id}", response_model=ApiResponse)
def get_attachments_by_owner(
    owner_type: str,
    owner_id: str,
    organization_id: str | None = Query(default=None, alias="organizationId"),
    service: AttachmentService = Depends(get_attachment_service),
) -> ApiResponse:
    attachments = service.find_by_owner(owner_type, owner_id, organization_id=organization_id)
    return ApiResponse.ok([_attachment_to_response(a) for a in attachments])


@router.get("/{id}", response_model=ApiResponse)
def get_attachment(id: UUID, service: AttachmentService = Depends(get_attachment_service)) -> ApiResponse:
    return ApiResponse.ok(_attachment_to_response(service.find_by_id(id)))


@router.delete("/{id}", response_model=ApiResponse)
def delete_attachment(
    id: UUID,
    deleted_by: str | None = Query(default=None, alias="deletedBy"),
    service: AttachmentService = Depends(get_attachment_service),
) -> ApiResponse:
    attachment = service.delete(id, deleted_by=deleted_by)
    return ApiResponse.ok({"id": str(attachment.id), "status": attachment.status.value}, "Attachment deletion requested")


@router.post("/{id}/retry", response_model=ApiResponse)
def retry_attachment_upload(id: UUID, service: AttachmentService = Depends(get_attachment_service)) -> ApiResponse:
    attachment = service.retry_upload(id)
    return ApiResponse.ok(_attachment_to_response(attachment))


@router.post("/{id}/verify", response_model=ApiResponse)
def verify_attachment(id: UUID, service: AttachmentService = Depends(get_attachment_service)) -> ApiResponse:
    result = service.verify(id)
    return ApiResponse.ok(result.model_dump(by_alias=True))


@router.get("/{id}/fallback")
def get_attachment_fallback(id: UUID, db: Session = Depends(get_db)) -> Response:
    """Serve the local copy regardless of CDN health."""
    return _fallback_response(FallbackReader(db).get_servable_bytes(id))


@router.get("/{id}/download")
def download_attachment(
    id: UUID,
    db: Session = Depends(get_db),
    service: AttachmentService = Depends(get_attachment_service),
) -> Response:
    """Redirect to the CDN when the external copy is confirmed, otherwise serve the local copy."""
    attachment = service.find_by_id(id)
    url = service.get_download_url(attachment)
    if url:
        return RedirectResponse(url=url, status_code=307)
    return _fallback_response(FallbackReader(db).get_servable_bytes(id))
