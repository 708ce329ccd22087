"""Response envelope shared by the session endpoints."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Envelope(BaseModel, Generic[T]):
    """`{success, data}` on success; errors use `{success, message, error_code}`."""
    success: bool = True
    data: T


class ErrorEnvelope(BaseModel):
    success: bool = False
    message: str
    error_code: str | None = None


def ok(data) -> dict:
    return {"success": True, "data": data}
