"""Common schemas used across the application."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope returned by every endpoint.

    Usage:
        response_model=ApiResponse[list[ProductOut]]

    Returns:
        {
            "success": true,
            "data": [...],
            "message": "optional",
            "count": 12       // list endpoints only
        }
    """
    success: bool = True
    data: T | None = None
    message: str | None = None
    count: int | None = None


def ok(data=None, message: str | None = None, count: int | None = None) -> dict:
    return {"success": True, "data": data, "message": message, "count": count}


def ok_list(items: list, message: str | None = None) -> dict:
    return ok(items, message=message, count=len(items))


def reject_explicit_nulls(model: BaseModel, fields: tuple[str, ...]) -> None:
    """Partial updates may omit a required column but not send it as null."""
    cleared = sorted(
        name for name in fields
        if name in model.model_fields_set and getattr(model, name) is None
    )
    if cleared:
        raise ValueError(f"cannot be null: {', '.join(cleared)}")
