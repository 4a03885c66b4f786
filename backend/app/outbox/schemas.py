from __future__ import annotations

from uuid import UUID

from app.common.schemas import CamelModel
from app.outbox.types import OutboxStats, ProcessingResult


class ProcessingErrorResponse(CamelModel):
    event_id: UUID
    error: str


class ProcessingResultResponse(CamelModel):
    processed: int
    failed: int
    skipped: int
    errors: list[ProcessingErrorResponse]

    @classmethod
    def from_result(cls, result: ProcessingResult) -> "ProcessingResultResponse":
        return cls(
            processed=result.processed,
            failed=result.failed,
            skipped=result.skipped,
            errors=[ProcessingErrorResponse(event_id=e.event_id, error=e.error) for e in result.errors],
        )


class OutboxStatsResponse(CamelModel):
    total: int
    unprocessed: int
    failed: int
    processed: int

    @classmethod
    def from_stats(cls, stats: OutboxStats) -> "OutboxStatsResponse":
        return cls(
            total=stats.total,
            unprocessed=stats.unprocessed,
            failed=stats.failed,
            processed=stats.processed,
        )


class CleanupResponse(CamelModel):
    deleted_count: int
    older_than_days: int
