"""Uniform JSON response envelope shared with the sibling services.

Success: ``{success: true, message, timestamp, data?, meta?}``
Error:   ``{success: false, error, timestamp, code?, errors?}``

Builders return plain dicts; ``json_response()`` turns one into a FastAPI
response with the right status code.
"""

from __future__ import annotations

from typing import Any, Mapping

from fastapi import Response
from fastapi.responses import JSONResponse

from eventcore.infra.time import iso_timestamp

STATUS_BY_CODE: dict[str, int] = {
    "VALIDATION_ERROR": 400,
    "BAD_REQUEST": 400,
    "MISSING_REQUIRED_FIELDS": 400,
    "UNAUTHORIZED": 401,
    "INVALID_SIGNATURE": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "TOO_MANY_REQUESTS": 429,
    "INTERNAL_SERVER_ERROR": 500,
    "INTERNAL_ERROR": 500,
    "ASYNC_HANDLER_ERROR": 500,
    "SERVICE_UNAVAILABLE": 503,
    "ROUTE_TIMEOUT": 504,
}


def create_response(
    success: bool,
    message: str,
    data: Any = None,
    meta: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Envelope carrying ``message`` whatever the outcome."""
    response: dict[str, Any] = {
        "success": success,
        "message": message,
        "timestamp": iso_timestamp(),
    }
    if data is not None:
        response["data"] = data
    if meta is not None:
        response["meta"] = dict(meta)
    return response


def success_response(
    message: str,
    data: Any = None,
    meta: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    return create_response(True, message, data, meta)


def error_response(
    message: str,
    errors: Any = None,
    code: str | None = None,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "success": False,
        "error": message,
        "timestamp": iso_timestamp(),
    }
    if errors is not None:
        response["errors"] = errors
    if code is not None:
        response["code"] = code
    return response


def paginated_response(
    message: str,
    data: Any,
    *,
    page: int,
    limit: int,
    total: int,
    pages: int | None = None,
) -> dict[str, Any]:
    """Success envelope with ``meta.pagination``.

    ``pages`` defaults to ceil(total / limit).
    """
    if pages is None:
        pages = -(-total // limit) if limit > 0 else 0
    return success_response(
        message,
        data,
        {
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": pages,
                "hasNext": page < pages,
                "hasPrev": page > 1,
            }
        },
    )


def created_response(message: str, data: Any = None) -> dict[str, Any]:
    return {**success_response(message, data), "statusCode": 201}


def no_content_response(message: str = "Operation successful") -> dict[str, Any]:
    return {**success_response(message), "statusCode": 204}


def validation_error_response(errors: Any) -> dict[str, Any]:
    return error_response("Validation error", errors, "VALIDATION_ERROR")


def not_found_response(resource: str = "Resource") -> dict[str, Any]:
    return error_response(f"{resource} not found", code="NOT_FOUND")


def unauthorized_response(message: str = "Unauthorized") -> dict[str, Any]:
    return error_response(message, code="UNAUTHORIZED")


def forbidden_response(message: str = "Forbidden") -> dict[str, Any]:
    return error_response(message, code="FORBIDDEN")


def conflict_response(message: str = "Data conflict") -> dict[str, Any]:
    return error_response(message, code="CONFLICT")


def server_error_response(message: str = "Internal server error") -> dict[str, Any]:
    return error_response(message, code="INTERNAL_SERVER_ERROR")


def bad_request_response(message: str = "Bad request") -> dict[str, Any]:
    return error_response(message, code="BAD_REQUEST")


def too_many_requests_response(message: str = "Too many requests") -> dict[str, Any]:
    return error_response(message, code="TOO_MANY_REQUESTS")


def service_unavailable_response(message: str = "Service unavailable") -> dict[str, Any]:
    return error_response(message, code="SERVICE_UNAVAILABLE")


def resolve_status(body: Mapping[str, Any]) -> int:
    """HTTP status for an envelope: statusCode, then error code, then success flag."""
    if "statusCode" in body:
        return int(body["statusCode"])
    code = body.get("code")
    if code in STATUS_BY_CODE:
        return STATUS_BY_CODE[code]
    return 200 if body.get("success") else 400


def json_response(body: Mapping[str, Any], status_code: int | None = None) -> Response:
    """Render an envelope. A 204 goes out with an empty body."""
    status = status_code if status_code is not None else resolve_status(body)
    if status == 204:
        return Response(status_code=204)
    content = {k: v for k, v in body.items() if k != "statusCode"}
    return JSONResponse(status_code=status, content=content)
