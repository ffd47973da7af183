from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Every envelope carries the request id so audit rows and logs can be correlated.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # Denial reasons travel in ``message``; offending references go in ``details``.
    code: str
    message: str
    details: dict[str, Any] | None = None
    # Set only for storage failures and timeouts the client may retry.
    retryable: bool | None = None


class Page(BaseModel, Generic[T]):
    # Offset pagination as served by the ticket listing.
    page: int
    page_size: int
    total: int
    items: list[T]


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Reuse the id assigned by the middleware, then the caller's header.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get(REQUEST_ID_HEADER)
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def is_versioned_request(request: Request) -> bool:
    # Only /v1 paths get envelopes; framework paths such as /docs keep FastAPI's shapes.
    return request.url.path.startswith(f"/{API_VERSION}")


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    # Routes hand over pydantic models, enums and datetimes; encode them once here.
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": jsonable_encoder(data), "meta": meta.model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    retryable: bool | None = None,
) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details, retryable=retryable)
    return {"error": jsonable_encoder(error.model_dump(exclude_none=True)), "meta": meta.model_dump()}
