from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    code: str
    message: str
    # Field-level problems, only for request validation failures.
    errors: list[dict[str, Any]] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request) -> dict[str, Any]:
    # The request middleware assigns the id; errors raised outside it still need one.
    request_id = getattr(request.state, "request_id", None) or str(uuid4())
    return ResponseMeta(request_id=request_id).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    """Wrap a payload for /v1 routes; unversioned routes (health) answer bare."""
    if not is_versioned_request(request):
        return data
    if isinstance(data, list):
        data = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in data]
    elif isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    errors: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, errors=errors)
    return {"error": body.model_dump(mode="json", exclude_none=True), "meta": _meta(request)}
