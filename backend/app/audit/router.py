from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.audit.schemas import AuditEventResponse
from app.audit.service import AuditService
from app.common.schemas import ApiResponse
from app.database import get_db

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/events", response_model=ApiResponse)
def list_audit_events(
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: str | None = Query(default=None, alias="entityId"),
    event_type: str | None = Query(default=None, alias="eventType"),
    organization_id: str | None = Query(default=None, alias="organizationId"),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> ApiResponse:
    events = AuditService(db).list_events(
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        organization_id=organization_id,
        limit=limit,
    )
    return ApiResponse.ok([AuditEventResponse.model_validate(e).model_dump(by_alias=True) for e in events])
