from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from imagevault.apps.api.response import error_response
from imagevault.core.errors import (
    ImageAlreadyDeletedError,
    ImageVaultError,
    NotFoundError,
    OptimizationError,
    ProviderConfigError,
    ProviderError,
    RegistryCommitError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "QUOTA_DENIED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "PROVIDER_ERROR",
    503: "CAPACITY_EXHAUSTED",
}

# Most specific classes first; lookups walk the list in order.
_CORE_ERROR_STATUS: list[tuple[type[ImageVaultError], int, str]] = [
    (ImageAlreadyDeletedError, 409, "IMAGE_ALREADY_DELETED"),
    (NotFoundError, 404, "NOT_FOUND"),
    (ValidationError, 422, "VALIDATION_ERROR"),
    (OptimizationError, 422, "OPTIMIZATION_ERROR"),
    (ProviderConfigError, 500, "PROVIDER_CONFIG_ERROR"),
    (ProviderError, 502, "PROVIDER_ERROR"),
    (RegistryCommitError, 500, "REGISTRY_COMMIT_ERROR"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Routes raise HTTPException(detail={"code", "message", ...}); other keys become details.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _core_error_details(exc: ImageVaultError) -> dict[str, Any] | None:
    if isinstance(exc, ProviderError):
        return {"provider": exc.provider, "status_code": exc.status_code}
    if isinstance(exc, RegistryCommitError):
        return {
            "provider": exc.provider,
            "provider_asset_id": exc.provider_asset_id,
            "compensated": exc.compensated,
        }
    return None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def imagevault_exception_handler(request: Request, exc: ImageVaultError) -> JSONResponse:
    status_code, code = 500, "INTERNAL_ERROR"
    for error_type, mapped_status, mapped_code in _CORE_ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code, code = mapped_status, mapped_code
            break
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    message = exc.message if isinstance(exc, ProviderError) else str(exc)
    payload = error_response(
        request=request,
        code=code,
        message=message or "Request failed",
        details=_core_error_details(exc),
    )
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
