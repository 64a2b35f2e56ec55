"""Image upload and deletion pipeline.

Upload: quota pre-check on the raw size, optimize off the event loop, quota
post-check on the optimized size against a freshly read billing row, pick a
storage account, upload, then register the image and debit both ledgers in a
single transaction. Deletion runs the chain in reverse.

No database transaction is left open across the optimizer or a provider call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import os
import random
import secrets
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.core.config import get_settings
from imagevault.core.errors import (
    ImageAlreadyDeletedError,
    ImageVaultError,
    NotFoundError,
    ProviderError,
    RegistryCommitError,
    ValidationError,
)
from imagevault.domain.models import ENTITY_TYPES, Image, OrganizationBilling, StorageAccount
from imagevault.persistence.repos import images as images_repo
from imagevault.persistence.repos.images import OrganizationUsage, UserUploadStats
from imagevault.providers.storage.base import StorageProvider
from imagevault.providers.storage.factory import get_storage_provider
from imagevault.services.billing import get_or_create_billing, refresh_billing
from imagevault.services.ledger import SqlUsageLedger, UsageLedger
from imagevault.services.optimizer import OptimizedImage, optimize_image
from imagevault.services.quota_guard import (
    DENIED_STORAGE_LIMIT,
    DENIED_UPLOAD_LIMIT,
    check_raw_upload,
    check_upload,
)
from imagevault.services.selector import CapacityExhausted, load_selectable_pool, select_account
from imagevault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DENIED_CAPACITY_EXHAUSTED = "CAPACITY_EXHAUSTED"

_EXTENSION_BY_FORMAT = {"jpeg": ".jpg", "png": ".png", "webp": ".webp", "gif": ".gif"}

Optimizer = Callable[..., OptimizedImage]
ProviderFactory = Callable[[StorageAccount], StorageProvider]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UploadFile:
    data: bytes
    file_name: str
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ImageSummary:
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
    created_at: datetime | None

    @classmethod
    def from_image(cls, image: Image) -> "ImageSummary":
        return cls(
            id=image.id,
            url=image.public_url,
            thumbnail_url=image.thumbnail_url,
            file_name=image.file_name,
            original_file_name=image.original_file_name,
            file_size=image.file_size,
            original_file_size=image.original_file_size,
            compression_ratio=round(image.compression_ratio, 2),
            width=image.width,
            height=image.height,
            mime_type=image.mime_type,
            provider=image.provider,
            entity_type=image.entity_type,
            entity_id=image.entity_id,
            created_at=image.created_at,
        )


@dataclass(frozen=True)
class UploadDenied:
    # Expected business outcome; returned, not raised.
    code: str
    reason: str
    required: int | None = None
    available: int | None = None


@dataclass(frozen=True)
class DeleteAck:
    image_id: str
    deleted_at: datetime
    # False when the backend no longer had the asset.
    remote_deleted: bool
    message: str = "Image deleted successfully"


def generate_file_name(original_name: str, file_format: str | None, now: datetime) -> str:
    # Extension follows the stored encoding, which may differ from the upload's.
    ext = _EXTENSION_BY_FORMAT.get(file_format or "") or os.path.splitext(original_name)[1].lower()
    return f"{int(now.timestamp() * 1000)}-{secrets.token_hex(8)}{ext}"


def _validate_entity(entity_type: str, entity_id: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(f"Invalid entity type: {entity_type}")
    if not entity_id:
        raise ValidationError("entity_id is required")


class ImageService:
    def __init__(
        self,
        *,
        provider_factory: ProviderFactory = get_storage_provider,
        ledger: UsageLedger | None = None,
        optimizer: Optimizer = optimize_image,
        rng: random.Random | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = get_settings()
        self._provider_factory = provider_factory
        self._ledger = ledger or SqlUsageLedger(time_provider=time_provider)
        self._optimizer = optimizer
        # Injected randomness keeps account selection reproducible in tests.
        self._rng = rng or random.Random()
        self._time_provider = time_provider or _utc_now

    def _deny(self, org_id: str, code: str, reason: str, required: int | None, available: int | None) -> UploadDenied:
        increment_counter("uploads_denied_total")
        increment_counter(f"uploads_denied.{code.lower()}")
        logger.info("image_upload_denied org_id=%s code=%s required=%s available=%s", org_id, code, required, available)
        return UploadDenied(code=code, reason=reason, required=required, available=available)

    async def upload_image(
        self,
        session: AsyncSession,
        upload: UploadFile,
        *,
        user_id: str,
        org_id: str,
        entity_type: str,
        entity_id: str,
    ) -> ImageSummary | UploadDenied:
        if not user_id or not org_id:
            raise ValidationError("user_id and org_id are required")
        _validate_entity(entity_type, entity_id)
        if not upload.data:
            raise ValidationError("No file uploaded")

        original_size = upload.size
        billing = await get_or_create_billing(session, org_id)
        decision = check_raw_upload(billing, original_size)
        await session.commit()
        if not decision.allowed:
            return self._deny(org_id, decision.code, decision.reason, decision.required, decision.available)

        optimized = await asyncio.to_thread(
            self._optimizer,
            upload.data,
            max_width=self._settings.image_max_width,
            max_height=self._settings.image_max_height,
            quality=self._settings.image_quality,
        )
        size = optimized.optimized_size

        billing = await refresh_billing(session, org_id)
        decision = check_upload(billing, size)
        if not decision.allowed:
            await session.commit()
            return self._deny(org_id, decision.code, decision.reason, decision.required, decision.available)

        now = self._time_provider()
        pool = await load_selectable_pool(session)
        selection = select_account(
            pool, size, rng=self._rng, now=now, top_k=self._settings.selector_top_k
        )
        await session.commit()
        if isinstance(selection, CapacityExhausted):
            increment_counter("capacity_exhausted_total")
            logger.warning(
                "storage_capacity_exhausted size=%s pool=%s eligible=%s",
                size,
                selection.pool_size,
                selection.eligible,
            )
            return self._deny(org_id, DENIED_CAPACITY_EXHAUSTED, selection.reason, size, None)
        account = selection
        # Rollback expires ORM state; keep plain copies for the failure paths.
        account_id = account.id
        provider_name = account.provider

        file_name = generate_file_name(upload.file_name, optimized.format, now)
        provider = self._provider_factory(account)
        try:
            result = await provider.upload(
                optimized.data,
                file_name=file_name,
                folder=f"{org_id}/{entity_type}",
                mime_type=optimized.mime_type,
                tags=[entity_type, org_id],
            )
            try:
                image = await images_repo.create_image(
                    session,
                    id=uuid4().hex,
                    org_id=org_id,
                    user_id=user_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    file_name=file_name,
                    original_file_name=upload.file_name,
                    file_size=size,
                    original_file_size=original_size,
                    mime_type=optimized.mime_type,
                    width=optimized.width,
                    height=optimized.height,
                    provider=provider_name,
                    provider_account_id=account_id,
                    provider_asset_id=result.asset_id,
                    public_url=result.public_url,
                    thumbnail_url=result.thumbnail_url,
                    format=optimized.format,
                    has_alpha=optimized.has_alpha,
                    is_progressive=optimized.is_progressive,
                    compression_ratio=optimized.compression_ratio,
                    created_at=now,
                    updated_at=now,
                )
                await self._ledger.debit(
                    session, account_id=account_id, org_id=org_id, user_id=user_id, size=size
                )
                # Concurrent uploads may have consumed the quota since the post-check.
                billing = await refresh_billing(session, org_id)
                overcommit = _overcommit_code(billing)
                if overcommit is not None:
                    await session.rollback()
                    await self._compensate(provider, account_id, result.asset_id)
                    return self._deny(
                        org_id,
                        overcommit,
                        "Organization quota was consumed by concurrent uploads. Please upgrade your plan.",
                        size,
                        None,
                    )
                await session.commit()
            except (SQLAlchemyError, ImageVaultError) as exc:
                await session.rollback()
                logger.error(
                    "image_registry_commit_failed provider=%s account=%s asset=%s",
                    provider_name,
                    account_id,
                    result.asset_id,
                    exc_info=exc,
                )
                compensated = await self._compensate(provider, account_id, result.asset_id)
                raise RegistryCommitError(
                    provider=provider_name,
                    provider_asset_id=result.asset_id,
                    provider_account_id=account_id,
                    compensated=compensated,
                ) from exc
        finally:
            await provider.aclose()

        increment_counter("uploads_total")
        logger.info(
            "image_uploaded image=%s org_id=%s account=%s size=%s original_size=%s",
            image.id,
            org_id,
            account_id,
            size,
            original_size,
        )
        return ImageSummary.from_image(image)

    async def _compensate(self, provider: StorageProvider, account_id: str, asset_id: str) -> bool:
        # Best effort; a failure here leaves an orphaned remote asset that is logged for operators.
        if not self._settings.compensate_orphaned_uploads:
            return False
        try:
            await provider.delete(asset_id)
        except ProviderError as exc:
            increment_counter("orphaned_assets_total")
            logger.error(
                "orphaned_asset_compensation_failed provider=%s account=%s asset=%s error=%s",
                provider.name,
                account_id,
                asset_id,
                exc.message,
            )
            return False
        logger.warning(
            "orphaned_asset_compensated provider=%s account=%s asset=%s",
            provider.name,
            account_id,
            asset_id,
        )
        return True

    async def delete_image(
        self,
        session: AsyncSession,
        image_id: str,
        actor_id: str,
        *,
        org_id: str | None = None,
    ) -> DeleteAck:
        image = await images_repo.get_image(session, image_id, org_id=org_id)
        if image is None:
            raise NotFoundError("Image not found")
        if image.deleted_at is not None:
            raise ImageAlreadyDeletedError("Image already deleted")
        account = await session.get(StorageAccount, image.provider_account_id)
        if account is None:
            raise NotFoundError("Storage account not found")
        image_org_id = image.org_id
        owner_id = image.user_id
        asset_id = image.provider_asset_id
        size = image.file_size
        await session.commit()

        provider = self._provider_factory(account)
        try:
            result = await provider.delete(asset_id)
        finally:
            await provider.aclose()

        now = self._time_provider()
        await self._ledger.credit(
            session, account_id=account.id, org_id=image_org_id, user_id=owner_id, size=size
        )
        claimed = await images_repo.soft_delete_image(session, image_id, actor_id=actor_id, now=now)
        if not claimed:
            # A concurrent delete won; undo this request's credit.
            await session.rollback()
            raise ImageAlreadyDeletedError("Image already deleted")
        await session.commit()

        increment_counter("deletes_total")
        logger.info(
            "image_deleted image=%s org_id=%s account=%s size=%s remote_deleted=%s",
            image_id,
            image_org_id,
            account.id,
            size,
            result.deleted,
        )
        return DeleteAck(image_id=image_id, deleted_at=now, remote_deleted=result.deleted)

    async def list_entity_images(
        self,
        session: AsyncSession,
        entity_type: str,
        entity_id: str,
        *,
        org_id: str | None = None,
        include_deleted: bool = False,
    ) -> list[ImageSummary]:
        _validate_entity(entity_type, entity_id)
        images = await images_repo.list_by_entity(
            session, entity_type, entity_id, org_id=org_id, include_deleted=include_deleted
        )
        return [ImageSummary.from_image(image) for image in images]

    async def get_organization_usage(self, session: AsyncSession, org_id: str) -> OrganizationUsage:
        return await images_repo.aggregate_org_usage(session, org_id)

    async def get_user_upload_stats(
        self,
        session: AsyncSession,
        user_id: str,
        *,
        org_id: str | None = None,
        window_days: int | None = None,
    ) -> UserUploadStats:
        window_days = window_days or self._settings.user_stats_default_window_days
        if window_days <= 0:
            raise ValidationError("window_days must be positive")
        return await images_repo.aggregate_user_usage(
            session, user_id, org_id=org_id, window_days=window_days, now=self._time_provider()
        )


def _overcommit_code(billing: OrganizationBilling) -> str | None:
    if billing.storage_used > billing.storage_limit:
        return DENIED_STORAGE_LIMIT
    if billing.uploads_used > billing.uploads_per_month_limit:
        return DENIED_UPLOAD_LIMIT
    return None
