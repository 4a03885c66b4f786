from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.common.schemas import ApiResponse
from app.common.time import utcnow
from app.config import get_settings
from app.database import get_db
from app.outbox.processor import OutboxProcessor, build_processor_config
from app.outbox.schemas import CleanupResponse, OutboxStatsResponse, ProcessingResultResponse
from app.outbox.service import cleanup_old_events, get_outbox_stats

router = APIRouter(prefix="/api/outbox", tags=["outbox"])


def get_outbox_processor() -> OutboxProcessor:
    return OutboxProcessor(build_processor_config())


@router.post("/process", response_model=ApiResponse)
def process_outbox(processor: OutboxProcessor = Depends(get_outbox_processor)) -> ApiResponse:
    """Run one processor batch on demand (admin trigger)."""
    result = processor.process_pending_events()
    return ApiResponse.ok(ProcessingResultResponse.from_result(result).model_dump(by_alias=True))


@router.get("/stats", response_model=ApiResponse)
def outbox_stats(db: Session = Depends(get_db)) -> ApiResponse:
    stats = get_outbox_stats(db, max_retries=get_settings().outbox_max_retries)
    return ApiResponse.ok(OutboxStatsResponse.from_stats(stats).model_dump(by_alias=True))


@router.post("/cleanup", response_model=ApiResponse)
def cleanup_outbox(
    older_than_days: int = Query(default=30, alias="olderThanDays", ge=1, le=3650),
    db: Session = Depends(get_db),
) -> ApiResponse:
    deleted = cleanup_old_events(db, older_than=utcnow() - timedelta(days=older_than_days))
    return ApiResponse.ok(
        CleanupResponse(deleted_count=deleted, older_than_days=older_than_days).model_dump(by_alias=True)
    )
