from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from app.audit.models import AuditEvent

logger = logging.getLogger(__name__)

SYSTEM_ORGANIZATION = "system"


def record_audit_event(
    db: Session,
    *,
    organization_id: str | None,
    entity_type: str,
    entity_id: UUID | str,
    event_type: str,
    payload: dict[str, Any] | None = None,
) -> AuditEvent:
    """Add an audit row to the current transaction (the caller commits)."""
    row = AuditEvent(
        organization_id=str(organization_id) if organization_id else SYSTEM_ORGANIZATION,
        entity_type=entity_type,
        entity_id=str(entity_id),
        event_type=event_type,
        payload=payload,
    )
    db.add(row)
    return row


class AuditService:
    def __init__(self, db: Session):
        self.db = db

    def list_events(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        event_type: str | None = None,
        organization_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        query = self.db.query(AuditEvent)
        if entity_type:
            query = query.filter(AuditEvent.entity_type == entity_type)
        if entity_id:
            query = query.filter(AuditEvent.entity_id == entity_id)
        if event_type:
            query = query.filter(AuditEvent.event_type == event_type)
        if organization_id:
            query = query.filter(AuditEvent.organization_id == organization_id)
        return query.order_by(AuditEvent.created_at.desc()).limit(limit).all()


@dataclass(frozen=True)
class EscalationNotice:
    outbox_event_id: UUID
    entity_type: str
    entity_id: UUID
    event_type: str
    retries: int
    error: str


class EscalationNotifier(Protocol):
    def notify(self, notice: EscalationNotice) -> None: ...


class LoggingNotifier:
    """Default sink: an ERROR log line that alerting can pick up."""

    def notify(self, notice: EscalationNotice) -> None:
        logger.error(
            "outbox event escalated outbox_event_id=%s entity=%s/%s event_type=%s retries=%s error=%s",
            notice.outbox_event_id,
            notice.entity_type,
            notice.entity_id,
            notice.event_type,
            notice.retries,
            notice.error,
        )
