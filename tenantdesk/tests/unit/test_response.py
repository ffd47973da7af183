from __future__ import annotations

from datetime import datetime, timezone

from starlette.requests import Request

from tenantdesk.apps.api.response import Page, error_response, success_response


def _request(path: str = "/v1/tickets/t1", headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": path,
        "query_string": b"",
        "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
    }
    return Request(scope)


def test_error_envelope_marks_retryable_failures_only() -> None:
    request = _request(headers={"X-Request-Id": "req-1"})

    failed = error_response(request=request, code="INTERNAL_ERROR", message="Storage timeout", retryable=True)
    denied = error_response(
        request=request,
        code="AUTH_FORBIDDEN",
        message="insufficient permission",
        details={"entity": "TICKET", "operation": "UPDATE"},
    )

    assert failed == {
        "error": {"code": "INTERNAL_ERROR", "message": "Storage timeout", "retryable": True},
        "meta": {"request_id": "req-1", "api_version": "v1"},
    }
    assert "retryable" not in denied["error"]
    assert denied["error"]["details"] == {"entity": "TICKET", "operation": "UPDATE"}


def test_success_envelope_encodes_pages_and_timestamps() -> None:
    request = _request()
    due = datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)

    payload = success_response(
        request=request,
        data=Page[dict](page=1, page_size=10, total=1, items=[{"id": "t1", "due_date": due}]),
    )

    data = payload["data"]
    assert (data["page"], data["page_size"], data["total"]) == (1, 10, 1)
    assert data["items"][0]["id"] == "t1"
    assert data["items"][0]["due_date"].startswith("2026-01-05T09:30:00")
    assert payload["meta"]["request_id"] == request.state.request_id
