from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from zonetrust.apps.api.response import error_response, is_versioned_request
from zonetrust.core.errors import (
    AnomalyNotFoundError,
    AuditTrailError,
    ConcurrentWriteError,
    DuplicateReportError,
    InvalidEntityKeyError,
    InvalidInputError,
    InvalidSignalError,
    InvalidTransitionError,
    PersistenceError,
    RecordNotFoundError,
    ReportIdConflictError,
    UnknownAnomalyTypeError,
    ZoneTrustError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[ZoneTrustError], int, str], ...] = (
    (InvalidEntityKeyError, 422, "INVALID_ENTITY_KEY"),
    (UnknownAnomalyTypeError, 422, "UNKNOWN_ANOMALY_TYPE"),
    (ReportIdConflictError, 422, "REPORT_ID_CONFLICT"),
    (InvalidSignalError, 422, "INVALID_SIGNAL"),
    (InvalidInputError, 422, "INVALID_INPUT"),
    (InvalidTransitionError, 409, "INVALID_TRANSITION"),
    (ConcurrentWriteError, 409, "CONCURRENT_WRITE"),
    (DuplicateReportError, 409, "DUPLICATE_REPORT"),
    (RecordNotFoundError, 404, "KILL_SWITCH_NOT_FOUND"),
    (AnomalyNotFoundError, 404, "ANOMALY_NOT_FOUND"),
    (PersistenceError, 503, "STORE_UNAVAILABLE"),
    (AuditTrailError, 500, "AUDIT_TRAIL_INCONSISTENT"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def domain_error_status(exc: ZoneTrustError) -> tuple[int, str]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises its own class for unknown routes and methods.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def zone_trust_exception_handler(request: Request, exc: ZoneTrustError) -> JSONResponse:
    # Map engine errors to stable status codes; nothing was mutated when these are raised.
    status_code, code = domain_error_status(exc)
    if status_code >= 500:
        logger.error("kill_switch_request_failed path=%s code=%s", request.url.path, code, exc_info=exc)
    payload = error_response(request=request, code=code, message=str(exc) or code)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
