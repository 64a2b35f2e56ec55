from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select, update

from imagevault.core.config import MB
from imagevault.core.errors import (
    ImageAlreadyDeletedError,
    ImageVaultError,
    NotFoundError,
    ProviderError,
    RegistryCommitError,
)
from imagevault.domain.models import Image, OrganizationBilling, StorageAccount
from imagevault.persistence.db import SessionLocal
from imagevault.providers.storage.fake import FakeStorageProvider
from imagevault.services import telemetry
from imagevault.services.images import ImageService, ImageSummary, UploadDenied, UploadFile
from imagevault.services.ledger import SqlUsageLedger
from imagevault.services.optimizer import optimize_image


async def _usage(account_id: str, org_id: str) -> tuple[StorageAccount, OrganizationBilling]:
    async with SessionLocal() as session:
        return await session.get(StorageAccount, account_id), await session.get(OrganizationBilling, org_id)


async def _image_count() -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(Image))).scalar_one())


async def _upload(service: ImageService, data: bytes, *, org_id: str, user_id: str = "u1", entity_id: str = "p-1"):
    async with SessionLocal() as session:
        return await service.upload_image(
            session,
            UploadFile(data=data, file_name="photo.png", mime_type="image/png"),
            user_id=user_id,
            org_id=org_id,
            entity_type="case",
            entity_id=entity_id,
        )


@pytest.mark.asyncio
async def test_upload_debits_optimized_size_on_both_ledgers(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory(storage_limit=100 * MB)
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)

    summary = await _upload(service, png_bytes, org_id=org_id)

    assert isinstance(summary, ImageSummary)
    assert summary.provider == "fake"
    assert summary.mime_type == "image/png"
    assert summary.file_name.endswith(".png")
    assert summary.original_file_name == "photo.png"
    assert summary.original_file_size == len(png_bytes)
    assert summary.url.startswith("https://fake.imagevault.local/")
    account_row, billing = await _usage(account.id, org_id)
    assert account_row.storage_used == summary.file_size
    assert account_row.uploads_used == 1
    assert billing.storage_used == summary.file_size
    assert billing.uploads_used == 1
    assert provider_factory.upload_calls == 1
    stored = FakeStorageProvider(account.account_identifier).assets
    assert len(stored) == 1
    assert telemetry.counters_snapshot()["uploads_total"] == 1


@pytest.mark.asyncio
async def test_free_plan_is_denied_without_provider_call(
    provider_factory, seeded_rng, png_bytes, account_factory
) -> None:
    await account_factory()
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)

    result = await _upload(service, png_bytes, org_id="org-free")

    assert isinstance(result, UploadDenied)
    assert result.code == "STORAGE_LIMIT_EXCEEDED"
    assert result.available == 0
    assert provider_factory.upload_calls == 0
    assert await _image_count() == 0
    async with SessionLocal() as session:
        billing = await session.get(OrganizationBilling, "org-free")
    assert billing.plan == "free"
    assert billing.storage_used == 0


@pytest.mark.asyncio
async def test_oversized_upload_is_denied_before_optimizing(
    provider_factory, seeded_rng, account_factory, org_factory
) -> None:
    await account_factory()
    org_id = await org_factory(plan="starter")
    calls: list[int] = []

    def _spy_optimizer(data: bytes, **kwargs):
        calls.append(len(data))
        return optimize_image(data, **kwargs)

    service = ImageService(provider_factory=provider_factory, optimizer=_spy_optimizer, rng=seeded_rng)
    result = await _upload(service, b"\x00" * (10 * MB), org_id=org_id)

    assert isinstance(result, UploadDenied)
    assert result.code == "FILE_TOO_LARGE"
    assert "5 MB" in result.reason
    assert calls == []
    assert provider_factory.upload_calls == 0


@pytest.mark.asyncio
async def test_storage_is_judged_on_optimized_size_not_raw_size(
    provider_factory, seeded_rng, image_factory, account_factory, org_factory
) -> None:
    account = await account_factory(storage_limit=100 * MB)
    org_id = await org_factory(plan="starter")
    async with SessionLocal() as session:
        billing = await session.get(OrganizationBilling, org_id)
        billing.storage_used = billing.storage_limit - 50_000
        await session.commit()
    raw = image_factory(size=(300, 300), fmt="BMP")
    assert len(raw) > 50_000
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)

    summary = await _upload(service, raw, org_id=org_id)

    assert isinstance(summary, ImageSummary)
    assert summary.original_file_size == len(raw)
    assert summary.file_size < 50_000
    account_row, billing = await _usage(account.id, org_id)
    assert account_row.storage_used == summary.file_size
    assert billing.storage_used == billing.storage_limit - 50_000 + summary.file_size


@pytest.mark.asyncio
async def test_upload_reports_capacity_exhausted_when_pool_is_full(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    await account_factory(storage_limit=1000, storage_used=990, status="exhausted")
    await account_factory(status="disabled")
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)

    result = await _upload(service, png_bytes, org_id=org_id)

    assert isinstance(result, UploadDenied)
    assert result.code == "CAPACITY_EXHAUSTED"
    assert provider_factory.upload_calls == 0
    assert telemetry.counters_snapshot()["capacity_exhausted_total"] == 1
    async with SessionLocal() as session:
        billing = await session.get(OrganizationBilling, org_id)
    assert billing.storage_used == 0


@pytest.mark.asyncio
async def test_upload_never_lands_on_an_account_without_room(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    tiny = await account_factory(storage_limit=10, priority=100)
    roomy = await account_factory(storage_limit=100 * MB)
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)

    for index in range(5):
        result = await _upload(service, png_bytes, org_id=org_id, entity_id=f"p-{index}")
        assert isinstance(result, ImageSummary)

    tiny_row, _ = await _usage(tiny.id, org_id)
    roomy_row, _ = await _usage(roomy.id, org_id)
    assert tiny_row.uploads_used == 0
    assert roomy_row.uploads_used == 5


@pytest.mark.asyncio
async def test_provider_upload_failure_leaves_ledgers_untouched(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    provider_factory.fake_kwargs["fail_uploads"] = True
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)

    with pytest.raises(ProviderError):
        await _upload(service, png_bytes, org_id=org_id)

    account_row, billing = await _usage(account.id, org_id)
    assert account_row.storage_used == 0
    assert billing.uploads_used == 0
    assert await _image_count() == 0


class _BrokenLedger(SqlUsageLedger):
    async def debit(self, session, *, account_id, org_id, user_id, size):
        raise ImageVaultError("ledger unavailable")


@pytest.mark.asyncio
async def test_registry_failure_compensates_remote_upload(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, ledger=_BrokenLedger(), rng=seeded_rng)

    with pytest.raises(RegistryCommitError) as excinfo:
        await _upload(service, png_bytes, org_id=org_id)

    assert excinfo.value.compensated is True
    assert excinfo.value.provider_account_id == account.id
    assert provider_factory.delete_calls == 1
    assert FakeStorageProvider(account.account_identifier).assets == {}
    assert await _image_count() == 0
    account_row, billing = await _usage(account.id, org_id)
    assert account_row.storage_used == 0
    assert billing.storage_used == 0


@pytest.mark.asyncio
async def test_registry_failure_with_failed_compensation_counts_orphan(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    provider_factory.fake_kwargs["fail_deletes"] = True
    service = ImageService(provider_factory=provider_factory, ledger=_BrokenLedger(), rng=seeded_rng)

    with pytest.raises(RegistryCommitError) as excinfo:
        await _upload(service, png_bytes, org_id=org_id)

    assert excinfo.value.compensated is False
    assert len(FakeStorageProvider(account.account_identifier).assets) == 1
    assert telemetry.counters_snapshot()["orphaned_assets_total"] == 1


class _RacingLedger(SqlUsageLedger):
    """Debits normally, then simulates a concurrent upload filling the quota."""

    async def debit(self, session, *, account_id, org_id, user_id, size):
        change = await super().debit(session, account_id=account_id, org_id=org_id, user_id=user_id, size=size)
        await session.execute(
            update(OrganizationBilling)
            .where(OrganizationBilling.org_id == org_id)
            .values(storage_used=OrganizationBilling.storage_limit + 1)
        )
        return change


@pytest.mark.asyncio
async def test_overcommit_after_debit_is_rolled_back(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, ledger=_RacingLedger(), rng=seeded_rng)

    result = await _upload(service, png_bytes, org_id=org_id)

    assert isinstance(result, UploadDenied)
    assert result.code == "STORAGE_LIMIT_EXCEEDED"
    assert provider_factory.delete_calls == 1
    assert FakeStorageProvider(account.account_identifier).assets == {}
    assert await _image_count() == 0
    account_row, billing = await _usage(account.id, org_id)
    assert account_row.uploads_used == 0
    assert billing.storage_used == 0


@pytest.mark.asyncio
async def test_delete_credits_storage_and_hides_image(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    summary = await _upload(service, png_bytes, org_id=org_id)

    async with SessionLocal() as session:
        ack = await service.delete_image(session, summary.id, "u2", org_id=org_id)

    assert ack.image_id == summary.id
    assert ack.remote_deleted is True
    account_row, billing = await _usage(account.id, org_id)
    assert account_row.storage_used == 0
    # Monthly upload counters are not refunded.
    assert account_row.uploads_used == 1
    assert billing.storage_used == 0
    assert billing.uploads_used == 1
    async with SessionLocal() as session:
        visible = await service.list_entity_images(session, "case", "p-1", org_id=org_id)
        everything = await service.list_entity_images(
            session, "case", "p-1", org_id=org_id, include_deleted=True
        )
        image = await session.get(Image, summary.id)
    assert visible == []
    assert [item.id for item in everything] == [summary.id]
    assert image.deleted_by == "u2"
    assert telemetry.counters_snapshot()["deletes_total"] == 1


@pytest.mark.asyncio
async def test_second_delete_is_rejected_without_double_credit(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    first = await _upload(service, png_bytes, org_id=org_id, entity_id="p-1")
    second = await _upload(service, png_bytes, org_id=org_id, entity_id="p-2")

    async with SessionLocal() as session:
        await service.delete_image(session, first.id, "u1", org_id=org_id)
    async with SessionLocal() as session:
        with pytest.raises(ImageAlreadyDeletedError):
            await service.delete_image(session, first.id, "u1", org_id=org_id)

    account_row, billing = await _usage(account.id, org_id)
    assert account_row.storage_used == second.file_size
    assert billing.storage_used == second.file_size


@pytest.mark.asyncio
async def test_delete_from_another_tenant_reads_as_missing(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    summary = await _upload(service, png_bytes, org_id=org_id)

    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await service.delete_image(session, summary.id, "intruder", org_id="org-other")
    assert provider_factory.delete_calls == 0


@pytest.mark.asyncio
async def test_delete_when_remote_asset_is_already_gone(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    summary = await _upload(service, png_bytes, org_id=org_id)
    FakeStorageProvider(account.account_identifier).assets.clear()

    async with SessionLocal() as session:
        ack = await service.delete_image(session, summary.id, "u1", org_id=org_id)

    assert ack.remote_deleted is False
    _, billing = await _usage(account.id, org_id)
    assert billing.storage_used == 0


@pytest.mark.asyncio
async def test_delete_keeps_image_when_provider_fails(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    account = await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    summary = await _upload(service, png_bytes, org_id=org_id)
    provider_factory.fake_kwargs["fail_deletes"] = True

    async with SessionLocal() as session:
        with pytest.raises(ProviderError):
            await service.delete_image(session, summary.id, "u1", org_id=org_id)

    _, billing = await _usage(account.id, org_id)
    assert billing.storage_used == summary.file_size
    async with SessionLocal() as session:
        image = await session.get(Image, summary.id)
    assert image.deleted_at is None


@pytest.mark.asyncio
async def test_organization_usage_groups_by_provider(
    provider_factory, seeded_rng, image_factory, account_factory, org_factory
) -> None:
    await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    first = await _upload(service, image_factory(size=(40, 40)), org_id=org_id, entity_id="p-1")
    second = await _upload(service, image_factory(size=(80, 60)), org_id=org_id, entity_id="p-2")

    async with SessionLocal() as session:
        usage = await service.get_organization_usage(session, org_id)
        again = await service.get_organization_usage(session, org_id)

    assert usage == again
    assert usage.total_images == 2
    assert usage.total_size == first.file_size + second.file_size
    assert usage.by_provider["fake"].count == 2


@pytest.mark.asyncio
async def test_user_upload_stats_cover_recent_uploads(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    await account_factory()
    org_id = await org_factory(plan="starter")
    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    first = await _upload(service, png_bytes, org_id=org_id, user_id="u1", entity_id="p-1")
    await _upload(service, png_bytes, org_id=org_id, user_id="u2", entity_id="p-2")

    async with SessionLocal() as session:
        stats = await service.get_user_upload_stats(session, "u1", org_id=org_id, window_days=7)

    assert stats.total_images == 1
    assert stats.total_size == first.file_size
    assert stats.avg_compression_ratio > 0


@pytest.mark.asyncio
async def test_user_upload_stats_window_excludes_old_uploads(
    provider_factory, seeded_rng, png_bytes, account_factory, org_factory
) -> None:
    await account_factory()
    org_id = await org_factory(plan="starter")
    old_service = ImageService(
        provider_factory=provider_factory,
        rng=seeded_rng,
        time_provider=lambda: datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    await _upload(old_service, png_bytes, org_id=org_id, user_id="u1")

    service = ImageService(provider_factory=provider_factory, rng=seeded_rng)
    async with SessionLocal() as session:
        stats = await service.get_user_upload_stats(session, "u1", org_id=org_id, window_days=30)

    assert stats.total_images == 0
    assert stats.total_size == 0
