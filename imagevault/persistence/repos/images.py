from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.domain.models import Image


@dataclass(frozen=True)
class ProviderUsageShare:
    count: int
    size: int


@dataclass(frozen=True)
class OrganizationUsage:
    total_size: int
    total_images: int
    by_provider: dict[str, ProviderUsageShare] = field(default_factory=dict)


@dataclass(frozen=True)
class UserUploadStats:
    total_size: int
    total_images: int
    avg_compression_ratio: float


async def create_image(session: AsyncSession, **fields: Any) -> Image:
    # Flush so the row is visible to the same transaction's ledger writes.
    image = Image(**fields)
    session.add(image)
    await session.flush()
    return image


async def get_image(session: AsyncSession, image_id: str, *, org_id: str | None = None) -> Image | None:
    # Tenant mismatch reads as missing to keep 404 semantics.
    stmt = select(Image).where(Image.id == image_id)
    if org_id is not None:
        stmt = stmt.where(Image.org_id == org_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def soft_delete_image(
    session: AsyncSession, image_id: str, *, actor_id: str, now: datetime | None = None
) -> bool:
    # Conditional update; only one concurrent delete can claim the row.
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(Image)
        .where(Image.id == image_id, Image.deleted_at.is_(None))
        .values(deleted_at=now, deleted_by=actor_id, updated_at=now)
    )
    return bool(result.rowcount)


async def list_by_entity(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    *,
    org_id: str | None = None,
    include_deleted: bool = False,
) -> list[Image]:
    stmt = select(Image).where(Image.entity_type == entity_type, Image.entity_id == entity_id)
    if org_id is not None:
        stmt = stmt.where(Image.org_id == org_id)
    if not include_deleted:
        stmt = stmt.where(Image.deleted_at.is_(None))
    result = await session.execute(stmt.order_by(Image.created_at.desc(), Image.id.desc()))
    return list(result.scalars().all())


async def aggregate_org_usage(session: AsyncSession, org_id: str) -> OrganizationUsage:
    result = await session.execute(
        select(Image.provider, func.count(), func.coalesce(func.sum(Image.file_size), 0))
        .where(Image.org_id == org_id, Image.deleted_at.is_(None))
        .group_by(Image.provider)
        .order_by(Image.provider)
    )
    by_provider = {
        provider: ProviderUsageShare(count=int(count), size=int(size))
        for provider, count, size in result.all()
    }
    return OrganizationUsage(
        total_size=sum(share.size for share in by_provider.values()),
        total_images=sum(share.count for share in by_provider.values()),
        by_provider=by_provider,
    )


async def aggregate_user_usage(
    session: AsyncSession,
    user_id: str,
    *,
    org_id: str | None = None,
    window_days: int = 30,
    now: datetime | None = None,
) -> UserUploadStats:
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=window_days)
    stmt = select(
        func.coalesce(func.sum(Image.file_size), 0),
        func.count(),
        func.avg(Image.compression_ratio),
    ).where(
        Image.user_id == user_id,
        Image.deleted_at.is_(None),
        Image.created_at >= since,
    )
    if org_id is not None:
        stmt = stmt.where(Image.org_id == org_id)
    total_size, total_images, avg_ratio = (await session.execute(stmt)).one()
    return UserUploadStats(
        total_size=int(total_size or 0),
        total_images=int(total_images or 0),
        avg_compression_ratio=float(avg_ratio or 0.0),
    )
