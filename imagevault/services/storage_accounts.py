from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.core.errors import ImageVaultError, NotFoundError, ValidationError
from imagevault.domain.models import (
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_DISABLED,
    ACCOUNT_STATUSES,
    PROVIDERS,
    StorageAccount,
)
from imagevault.providers.storage.base import StorageProvider
from imagevault.providers.storage.factory import get_storage_provider
from imagevault.services.capacity import derive_account_status, usage_percentage
from imagevault.services.ledger import SqlUsageLedger, UsageLedger


logger = logging.getLogger(__name__)

ProviderFactory = Callable[[StorageAccount], StorageProvider]

# Operator-editable fields; usage counters stay ledger-owned.
_UPDATABLE_FIELDS = frozenset(
    {
        "account_identifier",
        "credentials_json",
        "storage_limit",
        "bandwidth_limit",
        "uploads_limit",
        "transformations_limit",
        "priority",
        "status",
    }
)


@dataclass(frozen=True)
class SyncOutcome:
    account_id: str
    account_identifier: str
    ok: bool
    error: str | None = None


async def create_account(
    session: AsyncSession,
    *,
    provider: str,
    account_identifier: str,
    credentials: dict[str, Any],
    storage_limit: int | None = None,
    bandwidth_limit: int | None = None,
    uploads_limit: int | None = None,
    transformations_limit: int | None = None,
    priority: int = 0,
) -> StorageAccount:
    if provider not in PROVIDERS:
        raise ValidationError(f"Unsupported storage provider: {provider}")
    account = StorageAccount(
        id=uuid4().hex,
        provider=provider,
        account_identifier=account_identifier,
        credentials_json=dict(credentials),
        storage_limit=storage_limit,
        bandwidth_limit=bandwidth_limit,
        uploads_limit=uploads_limit,
        transformations_limit=transformations_limit,
        storage_used=0,
        bandwidth_used=0,
        uploads_used=0,
        transformations_used=0,
        priority=priority,
        status=ACCOUNT_STATUS_ACTIVE,
    )
    session.add(account)
    await session.commit()
    logger.info(
        "storage_account_created account=%s provider=%s identifier=%s",
        account.id,
        provider,
        account_identifier,
    )
    return account


async def list_accounts(
    session: AsyncSession, *, provider: str | None = None, status: str | None = None
) -> list[StorageAccount]:
    stmt = select(StorageAccount)
    if provider:
        stmt = stmt.where(StorageAccount.provider == provider)
    if status:
        stmt = stmt.where(StorageAccount.status == status)
    result = await session.execute(
        stmt.order_by(StorageAccount.priority.desc(), StorageAccount.created_at.desc())
    )
    return list(result.scalars().all())


async def get_account(session: AsyncSession, account_id: str) -> StorageAccount:
    result = await session.execute(select(StorageAccount).where(StorageAccount.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise NotFoundError(f"Storage account not found: {account_id}")
    return account


async def update_account(session: AsyncSession, account_id: str, updates: dict[str, Any]) -> StorageAccount:
    unknown = set(updates) - _UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
    if "status" in updates and updates["status"] not in ACCOUNT_STATUSES:
        raise ValidationError(f"Invalid account status: {updates['status']}")
    account = await get_account(session, account_id)
    for key, value in updates.items():
        setattr(account, key, value)
    # Re-enabling or changing limits must re-derive the status from usage.
    limits_changed = any(key.endswith("_limit") for key in updates)
    if account.status != ACCOUNT_STATUS_DISABLED and ("status" in updates or limits_changed):
        account.status = ACCOUNT_STATUS_ACTIVE
        account.status = derive_account_status(account)
    await session.commit()
    logger.info("storage_account_updated account=%s fields=%s", account_id, ",".join(sorted(updates)))
    return account


async def overall_usage_stats(session: AsyncSession) -> dict[str, Any]:
    result = await session.execute(
        select(StorageAccount).where(StorageAccount.status != ACCOUNT_STATUS_DISABLED)
    )
    accounts = list(result.scalars().all())
    stats: dict[str, Any] = {
        "total_accounts": len(accounts),
        "by_provider": {},
        "by_status": {status: 0 for status in ACCOUNT_STATUSES if status != ACCOUNT_STATUS_DISABLED},
        "total_limits": {"storage": 0, "bandwidth": 0},
        "total_usage": {"storage": 0, "bandwidth": 0, "uploads": 0},
    }
    for account in accounts:
        stats["by_status"][account.status] = stats["by_status"].get(account.status, 0) + 1
        provider_stats = stats["by_provider"].setdefault(
            account.provider, {"count": 0, "total_storage": 0, "used_storage": 0}
        )
        provider_stats["count"] += 1
        # Unlimited accounts add usage but no capacity to the totals.
        provider_stats["total_storage"] += account.storage_limit or 0
        provider_stats["used_storage"] += account.storage_used
        stats["total_limits"]["storage"] += account.storage_limit or 0
        stats["total_limits"]["bandwidth"] += account.bandwidth_limit or 0
        stats["total_usage"]["storage"] += account.storage_used
        stats["total_usage"]["bandwidth"] += account.bandwidth_used
        stats["total_usage"]["uploads"] += account.uploads_used
    stats["usage_percentage"] = {
        "storage": usage_percentage(stats["total_usage"]["storage"], stats["total_limits"]["storage"]),
        "bandwidth": usage_percentage(
            stats["total_usage"]["bandwidth"], stats["total_limits"]["bandwidth"]
        ),
    }
    return stats


async def sync_account_usage(
    session: AsyncSession,
    account_id: str,
    *,
    provider_factory: ProviderFactory = get_storage_provider,
    ledger: UsageLedger | None = None,
) -> StorageAccount:
    ledger = ledger or SqlUsageLedger()
    account = await get_account(session, account_id)
    # Release the read transaction before the provider round trip.
    await session.commit()
    provider = provider_factory(account)
    try:
        usage = await provider.get_usage_stats()
    finally:
        await provider.aclose()
    account = await ledger.apply_provider_usage(session, account_id=account_id, usage=usage)
    await session.commit()
    logger.info(
        "storage_account_synced account=%s storage_used=%s status=%s",
        account_id,
        account.storage_used,
        account.status,
    )
    return account


async def sync_all_accounts_usage(
    session: AsyncSession,
    *,
    provider_factory: ProviderFactory = get_storage_provider,
    ledger: UsageLedger | None = None,
) -> list[SyncOutcome]:
    result = await session.execute(
        select(StorageAccount.id, StorageAccount.account_identifier).where(
            StorageAccount.status != ACCOUNT_STATUS_DISABLED
        )
    )
    targets = list(result.all())
    await session.commit()

    outcomes: list[SyncOutcome] = []
    for account_id, identifier in targets:
        try:
            await sync_account_usage(
                session, account_id, provider_factory=provider_factory, ledger=ledger
            )
        except ImageVaultError as exc:
            # One failing backend must not block the others.
            await session.rollback()
            logger.warning("storage_account_sync_failed account=%s error=%s", account_id, exc)
            outcomes.append(
                SyncOutcome(account_id=account_id, account_identifier=identifier, ok=False, error=str(exc))
            )
            continue
        outcomes.append(SyncOutcome(account_id=account_id, account_identifier=identifier, ok=True))
    return outcomes
