from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update

from imagevault.core.errors import NotFoundError
from imagevault.domain.models import OrganizationBilling, OrganizationUserUsage, StorageAccount
from imagevault.persistence.db import SessionLocal
from imagevault.providers.storage.base import ProviderUsage
from imagevault.providers.storage.factory import get_storage_provider
from imagevault.providers.storage.fake import FakeStorageProvider
from imagevault.services.ledger import SqlUsageLedger
from imagevault.services.storage_accounts import sync_all_accounts_usage


async def _load(account_id: str, org_id: str) -> tuple[StorageAccount, OrganizationBilling]:
    async with SessionLocal() as session:
        account = await session.get(StorageAccount, account_id)
        billing = await session.get(OrganizationBilling, org_id)
        return account, billing


@pytest.mark.asyncio
async def test_debit_charges_both_ledgers_and_user_row(account_factory, org_factory) -> None:
    account = await account_factory(storage_limit=10_000)
    org_id = await org_factory(plan="starter")
    ledger = SqlUsageLedger()

    async with SessionLocal() as session:
        await ledger.debit(session, account_id=account.id, org_id=org_id, user_id="u1", size=1200)
        await ledger.debit(session, account_id=account.id, org_id=org_id, user_id="u1", size=300)
        await session.commit()

    account_row, billing = await _load(account.id, org_id)
    assert account_row.storage_used == 1500
    assert account_row.uploads_used == 2
    assert billing.storage_used == 1500
    assert billing.uploads_used == 2
    async with SessionLocal() as session:
        user_row = await session.get(OrganizationUserUsage, (org_id, "u1"))
    assert user_row.uploads == 2
    assert user_row.storage_used == 1500


@pytest.mark.asyncio
async def test_debit_updates_account_status_at_threshold(account_factory, org_factory) -> None:
    account = await account_factory(storage_limit=1000, storage_used=700)
    org_id = await org_factory(plan="starter")
    ledger = SqlUsageLedger()

    async with SessionLocal() as session:
        change = await ledger.debit(session, account_id=account.id, org_id=org_id, user_id="u1", size=120)
        await session.commit()
    assert change.account_status == "near_limit"

    async with SessionLocal() as session:
        change = await ledger.debit(session, account_id=account.id, org_id=org_id, user_id="u1", size=140)
        await session.commit()
    assert change.account_status == "exhausted"
    account_row, _billing = await _load(account.id, org_id)
    assert account_row.status == "exhausted"


@pytest.mark.asyncio
async def test_debit_unknown_account_raises(org_factory) -> None:
    org_id = await org_factory(plan="starter")
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await SqlUsageLedger().debit(session, account_id="missing", org_id=org_id, user_id="u1", size=1)


@pytest.mark.asyncio
async def test_concurrent_debits_are_not_lost(account_factory, org_factory) -> None:
    account = await account_factory(storage_limit=None)
    org_id = await org_factory(plan="business")
    ledger = SqlUsageLedger()

    async def _debit(size: int) -> None:
        async with SessionLocal() as session:
            await ledger.debit(session, account_id=account.id, org_id=org_id, user_id="u1", size=size)
            await session.commit()

    sizes = [100 + index for index in range(8)]
    await asyncio.gather(*(_debit(size) for size in sizes))

    account_row, billing = await _load(account.id, org_id)
    assert account_row.storage_used == sum(sizes)
    assert account_row.uploads_used == len(sizes)
    assert billing.storage_used == sum(sizes)
    assert billing.uploads_used == len(sizes)


@pytest.mark.asyncio
async def test_credit_refunds_storage_but_not_upload_count(account_factory, org_factory) -> None:
    account = await account_factory(storage_limit=10_000)
    org_id = await org_factory(plan="starter")
    ledger = SqlUsageLedger()

    async with SessionLocal() as session:
        await ledger.debit(session, account_id=account.id, org_id=org_id, user_id="u1", size=800)
        await session.commit()
        await ledger.credit(session, account_id=account.id, org_id=org_id, user_id="u1", size=800)
        await session.commit()

    account_row, billing = await _load(account.id, org_id)
    assert account_row.storage_used == 0
    assert account_row.uploads_used == 1
    assert billing.storage_used == 0
    assert billing.uploads_used == 1


@pytest.mark.asyncio
async def test_credit_without_billing_row_still_credits_account(account_factory) -> None:
    account = await account_factory(storage_limit=10_000, storage_used=500)
    async with SessionLocal() as session:
        change = await SqlUsageLedger().credit(
            session, account_id=account.id, org_id="org-gone", user_id=None, size=200
        )
        await session.commit()
    assert change.billing_status is None
    async with SessionLocal() as session:
        row = await session.get(StorageAccount, account.id)
    assert row.storage_used == 300


@pytest.mark.asyncio
async def test_provider_usage_overwrites_only_reported_dimensions(account_factory) -> None:
    account = await account_factory(storage_limit=1000, storage_used=10, bandwidth_limit=5000)
    async with SessionLocal() as session:
        await session.execute(
            update(StorageAccount)
            .where(StorageAccount.id == account.id)
            .values(bandwidth_used=77)
        )
        await session.commit()
        updated = await SqlUsageLedger().apply_provider_usage(
            session,
            account_id=account.id,
            usage=ProviderUsage(storage_used=960, storage_limit=99999),
        )
        await session.commit()
    assert updated.storage_used == 960
    assert updated.bandwidth_used == 77
    # Limits stay operator-owned.
    assert updated.storage_limit == 1000
    assert updated.status == "exhausted"


@pytest.mark.asyncio
async def test_monthly_reset_touches_only_stale_rows(account_factory, org_factory) -> None:
    now = datetime(2026, 4, 3, 0, 5, tzinfo=timezone.utc)
    stale = await account_factory(storage_limit=1000, storage_used=400, uploads_limit=100, uploads_used=100)
    fresh = await account_factory(storage_limit=1000, uploads_limit=100, uploads_used=40)
    old_org = await org_factory(plan="starter")
    new_org = await org_factory(plan="starter")
    async with SessionLocal() as session:
        stale_row = await session.get(StorageAccount, stale.id)
        stale_row.last_reset_at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        stale_row.status = "exhausted"
        fresh_row = await session.get(StorageAccount, fresh.id)
        fresh_row.last_reset_at = datetime(2026, 4, 1, 0, 1, tzinfo=timezone.utc)
        old_billing = await session.get(OrganizationBilling, old_org)
        old_billing.cycle_started_at = datetime(2026, 3, 2, tzinfo=timezone.utc)
        old_billing.uploads_used = 1000
        old_billing.storage_used = 100
        old_billing.status = "exceeded"
        new_billing = await session.get(OrganizationBilling, new_org)
        new_billing.cycle_started_at = datetime(2026, 3, 20, tzinfo=timezone.utc)
        new_billing.uploads_used = 12
        session.add(OrganizationUserUsage(org_id=old_org, user_id="u1", uploads=30, storage_used=100))
        await session.commit()

    async with SessionLocal() as session:
        summary = await SqlUsageLedger().reset_monthly_usage(session, now=now)
        await session.commit()

    assert summary.accounts_reset == 1
    assert summary.organizations_reset == 1
    async with SessionLocal() as session:
        stale_row = await session.get(StorageAccount, stale.id)
        fresh_row = await session.get(StorageAccount, fresh.id)
        old_billing = await session.get(OrganizationBilling, old_org)
        new_billing = await session.get(OrganizationBilling, new_org)
        user_row = await session.get(OrganizationUserUsage, (old_org, "u1"))
    assert stale_row.uploads_used == 0
    # Storage is cumulative and survives the reset.
    assert stale_row.storage_used == 400
    assert stale_row.status == "active"
    assert fresh_row.uploads_used == 40
    assert old_billing.uploads_used == 0
    assert old_billing.storage_used == 100
    assert old_billing.status == "active"
    assert new_billing.uploads_used == 12
    assert user_row.uploads == 0
    assert user_row.storage_used == 100

    async with SessionLocal() as session:
        again = await SqlUsageLedger().reset_monthly_usage(session, now=now)
        await session.commit()
    assert again.accounts_reset == 0
    assert again.organizations_reset == 0


@pytest.mark.asyncio
async def test_monthly_reset_derives_status_from_current_row(account_factory, org_factory) -> None:
    now = datetime(2026, 4, 3, 0, 5, tzinfo=timezone.utc)
    account = await account_factory(storage_limit=1000, storage_used=400, uploads_limit=100, uploads_used=100)
    org_id = await org_factory(plan="starter")
    async with SessionLocal() as session:
        await session.execute(
            update(StorageAccount)
            .where(StorageAccount.id == account.id)
            .values(last_reset_at=datetime(2026, 3, 1, tzinfo=timezone.utc), status="exhausted")
        )
        await session.commit()

    async with SessionLocal() as reset_session:
        snapshot = await reset_session.get(StorageAccount, account.id)
        assert snapshot.storage_used == 400
        await reset_session.commit()
        async with SessionLocal() as upload_session:
            await SqlUsageLedger().debit(
                upload_session, account_id=account.id, org_id=org_id, user_id="u1", size=580
            )
            await upload_session.commit()
        summary = await SqlUsageLedger().reset_monthly_usage(reset_session, now=now)
        await reset_session.commit()

    assert summary.accounts_reset == 1
    async with SessionLocal() as session:
        row = await session.get(StorageAccount, account.id)
    assert row.uploads_used == 0
    assert row.storage_used == 980
    # 2% storage left keeps the account exhausted even with monthly counters cleared.
    assert row.status == "exhausted"


@pytest.mark.asyncio
async def test_user_usage_rows_are_scoped_per_org(account_factory, org_factory) -> None:
    account = await account_factory()
    org_a = await org_factory(plan="starter")
    org_b = await org_factory(plan="starter")
    ledger = SqlUsageLedger()
    async with SessionLocal() as session:
        await ledger.debit(session, account_id=account.id, org_id=org_a, user_id="u1", size=10)
        await ledger.debit(session, account_id=account.id, org_id=org_b, user_id="u1", size=20)
        await session.commit()
        rows = (
            await session.execute(
                select(OrganizationUserUsage).order_by(OrganizationUserUsage.storage_used)
            )
        ).scalars().all()
    assert [(row.org_id, row.storage_used) for row in rows] == [(org_a, 10), (org_b, 20)]


@pytest.mark.asyncio
async def test_sync_all_reports_failures_per_account(account_factory) -> None:
    healthy = await account_factory(account_identifier="fake-healthy", storage_limit=10_000, storage_used=7)
    broken = await account_factory(account_identifier="fake-broken", storage_used=55)
    disabled = await account_factory(account_identifier="fake-off", status="disabled")
    async with SessionLocal() as session:
        await session.execute(
            update(StorageAccount)
            .where(StorageAccount.id == broken.id)
            .values(credentials_json={"fail_usage": True})
        )
        await session.commit()
    await FakeStorageProvider("fake-healthy").upload(
        b"x" * 1234, file_name="a.jpg", folder="org/case", mime_type="image/jpeg", tags=()
    )

    async with SessionLocal() as session:
        outcomes = await sync_all_accounts_usage(
            session, provider_factory=get_storage_provider, ledger=SqlUsageLedger()
        )

    by_id = {outcome.account_id: outcome for outcome in outcomes}
    assert set(by_id) == {healthy.id, broken.id}
    assert by_id[healthy.id].ok
    assert by_id[healthy.id].error is None
    assert not by_id[broken.id].ok
    assert "simulated outage" in by_id[broken.id].error
    assert disabled.id not in by_id
    async with SessionLocal() as session:
        healthy_row = await session.get(StorageAccount, healthy.id)
        broken_row = await session.get(StorageAccount, broken.id)
    assert healthy_row.storage_used == 1234
    assert broken_row.storage_used == 55
