from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from app.common.schemas import OrmModel


class AuditEventResponse(OrmModel):
    id: UUID
    organization_id: str
    entity_type: str
    entity_id: str
    event_type: str
    payload: dict[str, Any] | None = None
    created_at: datetime
