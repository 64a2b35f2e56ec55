from __future__ import annotations

from typing import Any

from imagevault.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response(
        "Missing identity headers",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-User-Id and X-Org-Id headers are required"),
    ),
    403: _error_response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    404: _error_response("Not found", _error_example(code="NOT_FOUND", message="Image not found")),
    422: _error_response(
        "Validation error",
        _error_example(code="VALIDATION_ERROR", message="Invalid entity type: invoice"),
    ),
    500: _error_response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

UPLOAD_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    402: _error_response(
        "Quota denied",
        _error_example(
            code="STORAGE_LIMIT_EXCEEDED",
            message="Organization storage limit exceeded. Please upgrade your plan.",
            details={"required": 1048576, "available": 0},
        ),
    ),
    413: _error_response(
        "Upload too large",
        _error_example(code="PAYLOAD_TOO_LARGE", message="File exceeds the maximum upload size"),
    ),
    415: _error_response(
        "Unsupported media type",
        _error_example(code="UNSUPPORTED_MEDIA_TYPE", message="Invalid file type. Only images are allowed"),
    ),
    502: _error_response(
        "Storage provider failure",
        _error_example(
            code="PROVIDER_ERROR",
            message="upload failed with status 500",
            details={"provider": "cloudinary", "status_code": 500},
        ),
    ),
    503: _error_response(
        "No storage capacity",
        _error_example(
            code="CAPACITY_EXHAUSTED",
            message="No storage account can accommodate this file size; all accounts are at capacity",
        ),
    ),
}

DELETE_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    409: _error_response(
        "Already deleted",
        _error_example(code="IMAGE_ALREADY_DELETED", message="Image already deleted"),
    ),
    502: UPLOAD_ERROR_RESPONSES[502],
}
