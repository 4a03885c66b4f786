from __future__ import annotations

import uuid
from contextvars import ContextVar, Token

_request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)

MAX_REQUEST_ID_LENGTH = 128


def resolve_request_id(incoming: str | None) -> str:
    """Reuse a caller-supplied `x-request-id` when sane, otherwise mint one."""
    value = (incoming or "").strip()
    if not value or len(value) > MAX_REQUEST_ID_LENGTH:
        return uuid.uuid4().hex
    return value


def set_request_id(request_id: str | None) -> Token[str | None]:
    return _request_id_var.set(request_id)


def reset_request_id(token: Token[str | None]) -> None:
    _request_id_var.reset(token)


def get_request_id() -> str | None:
    return _request_id_var.get()
