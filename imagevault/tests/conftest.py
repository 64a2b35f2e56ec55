from __future__ import annotations

import io
import os
import tempfile

# Point the engine at a throwaway SQLite file before any imagevault module builds it.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="imagevault-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/imagevault.db"
)

import random  # noqa: E402
from datetime import datetime, timezone  # noqa: E402
from typing import Any  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from PIL import Image as PILImage  # noqa: E402

from imagevault.core.config import get_settings  # noqa: E402
from imagevault.domain.models import Base, StorageAccount  # noqa: E402
from imagevault.persistence.db import SessionLocal, engine  # noqa: E402
from imagevault.providers.storage.fake import FakeStorageProvider, reset_fake_stores  # noqa: E402
from imagevault.providers.storage.sirv import clear_token_cache  # noqa: E402
from imagevault.services import telemetry  # noqa: E402
from imagevault.services.billing import change_plan  # noqa: E402


@pytest.fixture(autouse=True)
async def database() -> None:
    # Fresh schema per test; dispose so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    telemetry.reset()
    reset_fake_stores()
    clear_token_cache()
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    # Clear settings caches between tests to avoid env leakage.
    yield
    get_settings.cache_clear()


class RecordingProviderFactory:
    """Provider factory that hands out fake adapters and remembers them."""

    def __init__(self, **fake_kwargs: Any) -> None:
        self.fake_kwargs = fake_kwargs
        self.created: list[FakeStorageProvider] = []

    def __call__(self, account: StorageAccount) -> FakeStorageProvider:
        provider = FakeStorageProvider(account.account_identifier, **self.fake_kwargs)
        self.created.append(provider)
        return provider

    @property
    def upload_calls(self) -> int:
        return sum(provider.upload_calls for provider in self.created)

    @property
    def delete_calls(self) -> int:
        return sum(provider.delete_calls for provider in self.created)


@pytest.fixture
def provider_factory() -> RecordingProviderFactory:
    return RecordingProviderFactory()


@pytest.fixture
def seeded_rng() -> random.Random:
    return random.Random(1234)


def make_image_bytes(
    *,
    size: tuple[int, int] = (64, 48),
    fmt: str = "PNG",
    mode: str = "RGB",
    color: Any = (200, 30, 30),
) -> bytes:
    buffer = io.BytesIO()
    PILImage.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


async def create_fake_account(
    *,
    account_identifier: str | None = None,
    storage_limit: int | None = None,
    storage_used: int = 0,
    bandwidth_limit: int | None = None,
    uploads_limit: int | None = None,
    uploads_used: int = 0,
    status: str = "active",
    priority: int = 0,
    last_used_at: datetime | None = None,
) -> StorageAccount:
    account = StorageAccount(
        id=uuid4().hex,
        provider="fake",
        account_identifier=account_identifier or f"fake-{uuid4().hex[:8]}",
        credentials_json={},
        storage_limit=storage_limit,
        storage_used=storage_used,
        bandwidth_limit=bandwidth_limit,
        bandwidth_used=0,
        uploads_limit=uploads_limit,
        uploads_used=uploads_used,
        transformations_used=0,
        status=status,
        priority=priority,
        last_used_at=last_used_at or datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    async with SessionLocal() as session:
        session.add(account)
        await session.commit()
    return account


async def create_org(org_id: str | None = None, plan: str = "starter") -> str:
    org_id = org_id or f"org-{uuid4().hex[:10]}"
    async with SessionLocal() as session:
        await change_plan(session, org_id, plan, approved_by="ops")
    return org_id


@pytest.fixture
def image_factory():
    return make_image_bytes


@pytest.fixture
def account_factory():
    return create_fake_account


@pytest.fixture
def org_factory():
    return create_org
