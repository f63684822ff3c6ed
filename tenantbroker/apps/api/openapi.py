from __future__ import annotations

from typing import Any

from tenantbroker.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Bad request",
        code="validation_failed",
        message="Storage profile failed validation",
        details={"errors": ["BYOS bucket is required"]},
    ),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="admin_or_owner_required", message="Admin or owner role required."),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

TENANT_CONNECTION_RESPONSES: dict[int | str, dict[str, Any]] = {
    412: _response(
        "Tenant connection settings missing",
        code="missing_connection_settings",
        message="Organization has not configured its tenant database connection",
        details={"reason": "missing_connection_settings", "stage": "load_org_settings"},
    ),
    428: _response(
        "Dedicated key missing",
        code="missing_dedicated_key",
        message="Organization dedicated key has not been saved",
        details={"reason": "missing_dedicated_key", "stage": "load_org_settings"},
    ),
}

STORAGE_STATE_RESPONSES: dict[int | str, dict[str, Any]] = {
    409: _response(
        "Storage disconnected",
        code="storage_disconnected",
        message="Storage is disconnected; write is not allowed",
    ),
    424: _response(
        "Storage not configured",
        code="storage_not_configured",
        message="Storage is not configured for this organization",
    ),
    502: _response("Storage backend failure", code="storage_operation_failed", message="Storage backend request failure."),
}
