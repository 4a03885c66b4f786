from __future__ import annotations

from sqlalchemy import JSON, Column, Index, String

from app.common.models import CreatedAtMixin, UuidPrimaryKeyMixin
from app.database import Base


class AuditEvent(UuidPrimaryKeyMixin, CreatedAtMixin, Base):
    """Durable audit trail; rows are append-only."""

    __tablename__ = "audit_event"

    organization_id = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=False)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=True)

    __table_args__ = (
        Index("idx_audit_event_entity", "entity_type", "entity_id"),
        Index("idx_audit_event_type_created", "event_type", "created_at"),
    )
