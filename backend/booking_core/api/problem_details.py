import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from booking_core.domain.results import FailureKind, OperationResult

PROBLEM_TYPE_VALIDATION = "https://example.com/problems/validation-error"
PROBLEM_TYPE_NOT_FOUND = "https://example.com/problems/not-found"
PROBLEM_TYPE_ILLEGAL_TRANSITION = "https://example.com/problems/illegal-transition"
PROBLEM_TYPE_CONFLICT = "https://example.com/problems/slot-conflict"
PROBLEM_TYPE_SERVER = "https://example.com/problems/server-error"

_FAILURE_STATUS = {
    FailureKind.NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Not Found", PROBLEM_TYPE_NOT_FOUND),
    FailureKind.ILLEGAL_TRANSITION: (
        status.HTTP_409_CONFLICT,
        "Illegal Booking Transition",
        PROBLEM_TYPE_ILLEGAL_TRANSITION,
    ),
    FailureKind.CONFLICT: (status.HTTP_409_CONFLICT, "Time Slot Conflict", PROBLEM_TYPE_CONFLICT),
    FailureKind.VALIDATION: (
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Scheduling Validation Failed",
        PROBLEM_TYPE_VALIDATION,
    ),
}


def _resolve_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    return request_id


def _resolve_title(status_code: int, fallback: str | None) -> str:
    if fallback:
        return fallback
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def _resolve_type(status_code: int, type_override: str | None) -> str:
    if type_override:
        return type_override
    if status_code == status.HTTP_422_UNPROCESSABLE_ENTITY:
        return PROBLEM_TYPE_VALIDATION
    if status_code == status.HTTP_404_NOT_FOUND:
        return PROBLEM_TYPE_NOT_FOUND
    if status_code >= 500:
        return PROBLEM_TYPE_SERVER
    return PROBLEM_TYPE_ILLEGAL_TRANSITION


def problem_details(
    request: Request,
    *,
    status: int,
    title: str | None,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _resolve_request_id(request)
    content = {
        "type": _resolve_type(status, type_),
        "title": _resolve_title(status, title),
        "status": status,
        "detail": detail,
        "request_id": request_id,
        "errors": errors or [],
    }
    response = JSONResponse(
        status_code=status,
        content=content,
        headers=headers,
        media_type="application/problem+json",
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def problem_from_result(request: Request, result: OperationResult) -> JSONResponse:
    """Render a failed domain result; ``reason`` becomes the problem detail."""
    status_code, title, type_ = _FAILURE_STATUS.get(
        result.kind,
        (status.HTTP_422_UNPROCESSABLE_ENTITY, "Request Failed", PROBLEM_TYPE_VALIDATION),
    )
    return problem_details(
        request,
        status=status_code,
        title=title,
        detail=result.reason or title,
        type_=type_,
    )
