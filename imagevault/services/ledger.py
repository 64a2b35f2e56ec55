"""Usage ledger for storage accounts and tenant billing.

The ledger is the only writer of usage counters. Each counter change is a
single ``UPDATE ... SET used = used + :delta`` so concurrent uploads never lose
increments. The row lock taken by that statement is held until the caller
commits, and derived statuses are recomputed from the post-update row inside
the same transaction. Callers commit (or roll back) once for both ledgers so
the account mirror and the tenant mirror move together.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.core.errors import NotFoundError
from imagevault.domain.models import OrganizationBilling, OrganizationUserUsage, StorageAccount
from imagevault.persistence.db import insert_for
from imagevault.providers.storage.base import ProviderUsage
from imagevault.services.capacity import derive_account_status, derive_billing_status


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerChange:
    account_status: str | None
    billing_status: str | None


@dataclass(frozen=True)
class ResetSummary:
    accounts_reset: int
    organizations_reset: int


class UsageLedger(Protocol):
    async def debit(
        self, session: AsyncSession, *, account_id: str, org_id: str, user_id: str, size: int
    ) -> LedgerChange:
        ...

    async def credit(
        self, session: AsyncSession, *, account_id: str, org_id: str, user_id: str | None, size: int
    ) -> LedgerChange:
        ...

    async def apply_provider_usage(
        self, session: AsyncSession, *, account_id: str, usage: ProviderUsage
    ) -> StorageAccount:
        ...

    async def reset_monthly_usage(self, session: AsyncSession, *, now: datetime | None = None) -> ResetSummary:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _months_before(now: datetime, months: int) -> datetime:
    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp the day for shorter months (e.g. Mar 31 -> Feb 28).
    day = now.day
    while True:
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


class SqlUsageLedger:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic reset tests.
        self._time_provider = time_provider or _utc_now

    async def _reload_account(self, session: AsyncSession, account_id: str) -> StorageAccount:
        result = await session.execute(
            select(StorageAccount)
            .where(StorageAccount.id == account_id)
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError(f"Storage account not found: {account_id}")
        return account

    async def _reload_billing(self, session: AsyncSession, org_id: str) -> OrganizationBilling | None:
        result = await session.execute(
            select(OrganizationBilling)
            .where(OrganizationBilling.org_id == org_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _refresh_account_status(self, session: AsyncSession, account_id: str) -> str:
        account = await self._reload_account(session, account_id)
        status = derive_account_status(account)
        if status != account.status:
            await session.execute(
                update(StorageAccount).where(StorageAccount.id == account_id).values(status=status)
            )
            logger.info(
                "storage_account_status_changed account=%s from=%s to=%s",
                account_id,
                account.status,
                status,
            )
            account.status = status
        return status

    async def _refresh_billing_status(self, session: AsyncSession, org_id: str) -> str | None:
        billing = await self._reload_billing(session, org_id)
        if billing is None:
            return None
        status = derive_billing_status(billing)
        if status != billing.status:
            await session.execute(
                update(OrganizationBilling)
                .where(OrganizationBilling.org_id == org_id)
                .values(status=status)
            )
            logger.info("billing_status_changed org_id=%s from=%s to=%s", org_id, billing.status, status)
            billing.status = status
        return status

    async def debit(
        self, session: AsyncSession, *, account_id: str, org_id: str, user_id: str, size: int
    ) -> LedgerChange:
        now = self._time_provider()
        account_result = await session.execute(
            update(StorageAccount)
            .where(StorageAccount.id == account_id)
            .values(
                storage_used=StorageAccount.storage_used + size,
                uploads_used=StorageAccount.uploads_used + 1,
                last_used_at=now,
                usage_updated_at=now,
                updated_at=now,
            )
        )
        if account_result.rowcount == 0:
            raise NotFoundError(f"Storage account not found: {account_id}")
        account_status = await self._refresh_account_status(session, account_id)

        billing_result = await session.execute(
            update(OrganizationBilling)
            .where(OrganizationBilling.org_id == org_id)
            .values(
                storage_used=OrganizationBilling.storage_used + size,
                uploads_used=OrganizationBilling.uploads_used + 1,
                updated_at=now,
            )
        )
        if billing_result.rowcount == 0:
            raise NotFoundError(f"Billing record not found for organization {org_id}")
        billing_status = await self._refresh_billing_status(session, org_id)

        # Insert-or-increment keeps the per-user row race-safe.
        insert = insert_for(session)
        stmt = insert(OrganizationUserUsage).values(
            org_id=org_id, user_id=user_id, uploads=1, storage_used=size, last_upload_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[OrganizationUserUsage.org_id, OrganizationUserUsage.user_id],
            set_={
                "uploads": OrganizationUserUsage.uploads + 1,
                "storage_used": OrganizationUserUsage.storage_used + size,
                "last_upload_at": now,
            },
        )
        await session.execute(stmt)

        logger.debug(
            "usage_debited account=%s org_id=%s user_id=%s size=%s", account_id, org_id, user_id, size
        )
        return LedgerChange(account_status=account_status, billing_status=billing_status)

    async def credit(
        self, session: AsyncSession, *, account_id: str, org_id: str, user_id: str | None, size: int
    ) -> LedgerChange:
        # Storage is refunded; monthly upload counters are not.
        now = self._time_provider()
        account_result = await session.execute(
            update(StorageAccount)
            .where(StorageAccount.id == account_id)
            .values(storage_used=StorageAccount.storage_used - size, usage_updated_at=now, updated_at=now)
        )
        if account_result.rowcount == 0:
            raise NotFoundError(f"Storage account not found: {account_id}")
        account_status = await self._refresh_account_status(session, account_id)

        billing_result = await session.execute(
            update(OrganizationBilling)
            .where(OrganizationBilling.org_id == org_id)
            .values(storage_used=OrganizationBilling.storage_used - size, updated_at=now)
        )
        billing_status = None
        if billing_result.rowcount == 0:
            logger.warning("usage_credit_billing_missing org_id=%s size=%s", org_id, size)
        else:
            billing_status = await self._refresh_billing_status(session, org_id)

        if user_id:
            await session.execute(
                update(OrganizationUserUsage)
                .where(
                    OrganizationUserUsage.org_id == org_id,
                    OrganizationUserUsage.user_id == user_id,
                )
                .values(storage_used=OrganizationUserUsage.storage_used - size)
            )

        logger.debug("usage_credited account=%s org_id=%s size=%s", account_id, org_id, size)
        return LedgerChange(account_status=account_status, billing_status=billing_status)

    async def apply_provider_usage(
        self, session: AsyncSession, *, account_id: str, usage: ProviderUsage
    ) -> StorageAccount:
        # Provider-reported usage replaces the local mirror; unreported dimensions are kept.
        now = self._time_provider()
        values: dict[str, object] = {"usage_updated_at": now, "updated_at": now}
        if usage.storage_used is not None:
            values["storage_used"] = usage.storage_used
        if usage.bandwidth_used is not None:
            values["bandwidth_used"] = usage.bandwidth_used
        if usage.transformations_used is not None:
            values["transformations_used"] = usage.transformations_used
        result = await session.execute(
            update(StorageAccount).where(StorageAccount.id == account_id).values(**values)
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Storage account not found: {account_id}")
        await self._refresh_account_status(session, account_id)
        return await self._reload_account(session, account_id)

    async def reset_monthly_usage(self, session: AsyncSession, *, now: datetime | None = None) -> ResetSummary:
        now = now or self._time_provider()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        cycle_cutoff = _months_before(now, 1)

        account_due = or_(StorageAccount.last_reset_at.is_(None), StorageAccount.last_reset_at < month_start)
        account_ids = list((await session.execute(select(StorageAccount.id).where(account_due))).scalars())
        accounts_reset = 0
        if account_ids:
            # Storage is cumulative; only the monthly counters are zeroed.
            result = await session.execute(
                update(StorageAccount)
                .where(StorageAccount.id.in_(account_ids), account_due)
                .values(
                    bandwidth_used=0,
                    uploads_used=0,
                    transformations_used=0,
                    last_reset_at=now,
                    usage_updated_at=now,
                    updated_at=now,
                )
            )
            accounts_reset = result.rowcount
            for account_id in account_ids:
                await self._refresh_account_status(session, account_id)

        billing_due = or_(
            OrganizationBilling.cycle_started_at.is_(None),
            OrganizationBilling.cycle_started_at <= cycle_cutoff,
        )
        org_ids = list((await session.execute(select(OrganizationBilling.org_id).where(billing_due))).scalars())
        organizations_reset = 0
        if org_ids:
            result = await session.execute(
                update(OrganizationBilling)
                .where(OrganizationBilling.org_id.in_(org_ids), billing_due)
                .values(bandwidth_used=0, uploads_used=0, cycle_started_at=now, updated_at=now)
            )
            organizations_reset = result.rowcount
            await session.execute(
                update(OrganizationUserUsage)
                .where(OrganizationUserUsage.org_id.in_(org_ids))
                .values(uploads=0)
            )
            for org_id in org_ids:
                await self._refresh_billing_status(session, org_id)

        logger.info(
            "monthly_usage_reset accounts=%s organizations=%s", accounts_reset, organizations_reset
        )
        return ResetSummary(accounts_reset=accounts_reset, organizations_reset=organizations_reset)
