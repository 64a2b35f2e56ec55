from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.apps.api.deps import Principal, get_db, get_image_service, require_role
from imagevault.apps.api.openapi import (
    DEFAULT_ERROR_RESPONSES,
    DELETE_ERROR_RESPONSES,
    UPLOAD_ERROR_RESPONSES,
)
from imagevault.apps.api.response import SuccessEnvelope, success_response
from imagevault.core.config import get_settings
from imagevault.core.errors import ImageVaultError
from imagevault.services.images import (
    DENIED_CAPACITY_EXHAUSTED,
    ImageService,
    ImageSummary,
    UploadDenied,
)
from imagevault.services.images import UploadFile as UploadPayload


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/images", tags=["images"], responses=DEFAULT_ERROR_RESPONSES)


class ImageResponse(BaseModel):
    id: str
    url: str
    thumbnail_url: str | None
    file_name: str
    original_file_name: str
    file_size: int
    original_file_size: int
    compression_ratio: float
    width: int | None
    height: int | None
    mime_type: str
    provider: str
    entity_type: str
    entity_id: str
    created_at: str | None


class BatchFailure(BaseModel):
    file_name: str
    code: str
    message: str


class BatchUploadResponse(BaseModel):
    successful: list[ImageResponse]
    failed: list[BatchFailure]
    total_uploaded: int
    total_failed: int


class DeleteResponse(BaseModel):
    image_id: str
    deleted_at: str
    remote_deleted: bool
    message: str


class ProviderShareResponse(BaseModel):
    count: int
    size: int


class OrganizationUsageResponse(BaseModel):
    total_size: int
    total_images: int
    by_provider: dict[str, ProviderShareResponse]


class UserUploadStatsResponse(BaseModel):
    total_size: int
    total_images: int
    avg_compression_ratio: float
    window_days: int


def _to_response(summary: ImageSummary) -> ImageResponse:
    return ImageResponse(
        id=summary.id,
        url=summary.url,
        thumbnail_url=summary.thumbnail_url,
        file_name=summary.file_name,
        original_file_name=summary.original_file_name,
        file_size=summary.file_size,
        original_file_size=summary.original_file_size,
        compression_ratio=summary.compression_ratio,
        width=summary.width,
        height=summary.height,
        mime_type=summary.mime_type,
        provider=summary.provider,
        entity_type=summary.entity_type,
        entity_id=summary.entity_id,
        created_at=summary.created_at.isoformat() if summary.created_at else None,
    )


def _allowed_mime_types() -> set[str]:
    raw = get_settings().upload_allowed_mime_types
    return {item.strip().lower() for item in raw.split(",") if item.strip()}


async def _read_upload(file: UploadFile) -> UploadPayload:
    # Reject at the boundary before any quota or decode work.
    mime_type = (file.content_type or "").lower()
    if mime_type not in _allowed_mime_types():
        raise HTTPException(
            status_code=415,
            detail={
                "code": "UNSUPPORTED_MEDIA_TYPE",
                "message": "Invalid file type. Only images are allowed",
                "mime_type": mime_type or None,
            },
        )
    max_bytes = get_settings().upload_max_bytes
    data = await file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail={
                "code": "PAYLOAD_TOO_LARGE",
                "message": "File exceeds the maximum upload size",
                "max_bytes": max_bytes,
            },
        )
    return UploadPayload(data=data, file_name=file.filename or "upload", mime_type=mime_type)


def _denied_exception(denied: UploadDenied) -> HTTPException:
    # Quota denials are payment-required; pool exhaustion is an operator problem.
    status_code = 503 if denied.code == DENIED_CAPACITY_EXHAUSTED else 402
    return HTTPException(
        status_code=status_code,
        detail={
            "code": denied.code,
            "message": denied.reason,
            "required": denied.required,
            "available": denied.available,
        },
    )


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[ImageResponse],
    responses=UPLOAD_ERROR_RESPONSES,
)
async def upload_image(
    request: Request,
    entity_type: str = Form(...),
    entity_id: str = Form(...),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("editor")),
    service: ImageService = Depends(get_image_service),
) -> dict:
    upload = await _read_upload(file)
    result = await service.upload_image(
        db,
        upload,
        user_id=principal.user_id,
        org_id=principal.org_id,
        entity_type=entity_type,
        entity_id=entity_id,
    )
    if isinstance(result, UploadDenied):
        raise _denied_exception(result)
    return success_response(request=request, data=_to_response(result))


@router.post(
    "/batch",
    status_code=201,
    response_model=SuccessEnvelope[BatchUploadResponse],
    responses=UPLOAD_ERROR_RESPONSES,
)
async def upload_images_batch(
    request: Request,
    entity_type: str = Form(...),
    entity_id: str = Form(...),
    files: list[UploadFile] = File(...),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("editor")),
    service: ImageService = Depends(get_image_service),
) -> dict:
    max_files = get_settings().upload_max_files
    if len(files) > max_files:
        raise HTTPException(
            status_code=422,
            detail={"code": "TOO_MANY_FILES", "message": f"At most {max_files} files per request"},
        )
    uploads = [await _read_upload(file) for file in files]

    successful: list[ImageResponse] = []
    failed: list[BatchFailure] = []
    # Sequential; each upload commits its own ledger debit before the next quota check.
    for upload in uploads:
        try:
            result = await service.upload_image(
                db,
                upload,
                user_id=principal.user_id,
                org_id=principal.org_id,
                entity_type=entity_type,
                entity_id=entity_id,
            )
        except ImageVaultError as exc:
            await db.rollback()
            logger.warning("batch_upload_item_failed file=%s error=%s", upload.file_name, exc)
            failed.append(
                BatchFailure(file_name=upload.file_name, code=type(exc).__name__, message=str(exc))
            )
            continue
        if isinstance(result, UploadDenied):
            failed.append(BatchFailure(file_name=upload.file_name, code=result.code, message=result.reason))
            continue
        successful.append(_to_response(result))

    payload = BatchUploadResponse(
        successful=successful,
        failed=failed,
        total_uploaded=len(successful),
        total_failed=len(failed),
    )
    return success_response(request=request, data=payload)


# Fixed paths must be registered before the two-segment entity route.
@router.get("/usage/organization", response_model=SuccessEnvelope[OrganizationUsageResponse])
async def organization_usage(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
    service: ImageService = Depends(get_image_service),
) -> dict:
    usage = await service.get_organization_usage(db, principal.org_id)
    payload = OrganizationUsageResponse(
        total_size=usage.total_size,
        total_images=usage.total_images,
        by_provider={
            provider: ProviderShareResponse(count=share.count, size=share.size)
            for provider, share in usage.by_provider.items()
        },
    )
    return success_response(request=request, data=payload)


@router.get("/usage/me", response_model=SuccessEnvelope[UserUploadStatsResponse])
async def my_upload_stats(
    request: Request,
    days: int | None = Query(default=None, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
    service: ImageService = Depends(get_image_service),
) -> dict:
    window_days = days or get_settings().user_stats_default_window_days
    stats = await service.get_user_upload_stats(
        db, principal.user_id, org_id=principal.org_id, window_days=window_days
    )
    payload = UserUploadStatsResponse(
        total_size=stats.total_size,
        total_images=stats.total_images,
        avg_compression_ratio=round(stats.avg_compression_ratio, 2),
        window_days=window_days,
    )
    return success_response(request=request, data=payload)


@router.get("/{entity_type}/{entity_id}", response_model=SuccessEnvelope[list[ImageResponse]])
async def list_entity_images(
    request: Request,
    entity_type: str,
    entity_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
    service: ImageService = Depends(get_image_service),
) -> dict:
    images = await service.list_entity_images(db, entity_type, entity_id, org_id=principal.org_id)
    return success_response(request=request, data=[_to_response(image) for image in images])


@router.delete(
    "/{image_id}",
    response_model=SuccessEnvelope[DeleteResponse],
    responses=DELETE_ERROR_RESPONSES,
)
async def delete_image(
    request: Request,
    image_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("editor")),
    service: ImageService = Depends(get_image_service),
) -> dict:
    ack = await service.delete_image(db, image_id, principal.user_id, org_id=principal.org_id)
    payload = DeleteResponse(
        image_id=ack.image_id,
        deleted_at=ack.deleted_at.isoformat(),
        remote_deleted=ack.remote_deleted,
        message=ack.message,
    )
    return success_response(request=request, data=payload)
