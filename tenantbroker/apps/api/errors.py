from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantbroker.apps.api.response import error_response, is_versioned_request
from tenantbroker.core.errors import (
    BrokerError,
    StorageConnectionTestError,
    StorageProfileValidationError,
    TenantConnectionError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _broker_error_details(exc: BrokerError) -> dict[str, Any] | None:
    # Only structured, non-secret context is surfaced to clients.
    if isinstance(exc, StorageProfileValidationError):
        return {"errors": exc.errors}
    if isinstance(exc, TenantConnectionError):
        return {"reason": exc.reason, "stage": exc.stage}
    if isinstance(exc, StorageConnectionTestError) and exc.backend_code:
        return {"backend_code": exc.backend_code}
    return None


async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("broker_error code=%s path=%s", exc.code, request.url.path)
    details = _broker_error_details(exc)
    if not is_versioned_request(request):
        content: dict[str, Any] = {"detail": {"code": exc.code, "message": exc.message}}
        return JSONResponse(content=content, status_code=exc.status_code)
    payload = error_response(request=request, code=exc.code, message=exc.message, details=details)
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers both FastAPI and Starlette HTTP exceptions.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
