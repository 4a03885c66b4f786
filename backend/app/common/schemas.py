from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


def to_camel(value: str) -> str:
    head, *rest = value.split("_")
    return head + "".join(word[:1].upper() + word[1:] for word in rest if word)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
    )


class OrmModel(CamelModel):
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class ApiResponse(BaseModel):
    """Envelope returned by every JSON endpoint."""

    success: bool
    code: int
    message: str
    data: Optional[Any] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "OK") -> "ApiResponse":
        return cls(success=True, code=0, message=message, data=data)

    @classmethod
    def fail(
        cls,
        code: int,
        message: str,
        data: Any = None,
    ) -> "ApiResponse":
        return cls(success=False, code=code, message=message, data=data)
