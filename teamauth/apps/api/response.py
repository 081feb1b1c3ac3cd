from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


API_VERSION = "v1"

T = TypeVar("T")


class ApiModel(BaseModel):
    # camelCase on the wire, snake_case in Python; either is accepted on input.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def request_meta(request: Request) -> dict[str, str]:
    """Envelope metadata, tying the body to the ``X-Request-Id`` header.

    The middleware normally assigns the id first; handlers reached without
    it (exception paths) fall back to the caller's header or a fresh id.
    """
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return ResponseMeta(request_id=request_id).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    # Health checks on the bare path get the payload without an envelope.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": request_meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {"error": body.model_dump(exclude_none=True), "meta": request_meta(request)}
