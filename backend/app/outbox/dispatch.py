"""Dispatch table from (entity_type, event_type) to event handlers.

A pair missing from the table is unsupported: the processor leaves such
events unprocessed so misrouted work shows up in the unprocessed count.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from app.attachment import reconcile
from app.outbox.types import EntityType, EventType, HandlerContext

Handler = Callable[[HandlerContext], None]
ExhaustionHook = Callable[[HandlerContext, str], None]


@dataclass(frozen=True)
class EventRoute:
    handle: Handler
    on_exhausted: Optional[ExhaustionHook] = None


DEFAULT_ROUTES: Mapping[tuple[str, str], EventRoute] = {
    (EntityType.ATTACHMENT, EventType.UPLOAD_SUCCESS): EventRoute(handle=reconcile.handle_upload_success),
    (EntityType.ATTACHMENT, EventType.VERIFY_UPLOAD): EventRoute(
        handle=reconcile.handle_verify_upload,
        on_exhausted=reconcile.fail_attachment_upload,
    ),
    (EntityType.ATTACHMENT, EventType.REPAIR_UPLOAD): EventRoute(
        handle=reconcile.handle_repair_upload,
        on_exhausted=reconcile.fail_attachment_upload,
    ),
    (EntityType.ATTACHMENT, EventType.DELETE_FILE): EventRoute(
        handle=reconcile.handle_delete_file,
        on_exhausted=reconcile.finish_attachment_delete,
    ),
}


def resolve_route(
    entity_type: str,
    event_type: str,
    routes: Mapping[tuple[str, str], EventRoute] = DEFAULT_ROUTES,
) -> EventRoute | None:
    return routes.get((entity_type, event_type))
