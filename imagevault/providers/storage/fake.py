from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Sequence

from imagevault.core.errors import ProviderError
from imagevault.domain.models import PROVIDER_FAKE
from imagevault.providers.storage.base import DeleteResult, ProviderUsage, UploadResult


@dataclass
class FakeAsset:
    data: bytes
    mime_type: str
    tags: tuple[str, ...]


# Per-account stores survive adapter instances, mirroring a real remote backend.
_stores: dict[str, dict[str, FakeAsset]] = defaultdict(dict)


def reset_fake_stores() -> None:
    _stores.clear()


class FakeStorageProvider:
    name = PROVIDER_FAKE

    def __init__(
        self,
        account_identifier: str = "fake",
        *,
        fail_uploads: bool = False,
        fail_deletes: bool = False,
        fail_usage: bool = False,
    ) -> None:
        # Deterministic in-memory backend so tests assert on remote state without network.
        self.account_identifier = account_identifier
        self.fail_uploads = fail_uploads
        self.fail_deletes = fail_deletes
        self.fail_usage = fail_usage
        self.upload_calls = 0
        self.delete_calls = 0

    @property
    def assets(self) -> dict[str, FakeAsset]:
        return _stores[self.account_identifier]

    def public_url(self, asset_id: str) -> str:
        return f"https://fake.imagevault.local/{self.account_identifier}/{asset_id}"

    async def upload(
        self,
        data: bytes,
        *,
        file_name: str,
        folder: str,
        mime_type: str,
        tags: Sequence[str],
    ) -> UploadResult:
        self.upload_calls += 1
        if self.fail_uploads:
            raise ProviderError(self.name, "upload failed: simulated outage")
        asset_id = f"{folder.strip('/')}/{file_name}" if folder else file_name
        self.assets[asset_id] = FakeAsset(data=bytes(data), mime_type=mime_type, tags=tuple(tags))
        url = self.public_url(asset_id)
        return UploadResult(
            asset_id=asset_id,
            public_url=url,
            thumbnail_url=f"{url}?w=300&h=300",
            size=len(data),
            format=mime_type.split("/")[-1] if mime_type else None,
        )

    async def delete(self, asset_id: str) -> DeleteResult:
        self.delete_calls += 1
        if self.fail_deletes:
            raise ProviderError(self.name, "delete failed: simulated outage")
        removed = self.assets.pop(asset_id, None)
        return DeleteResult(
            asset_id=asset_id,
            deleted=removed is not None,
            message="ok" if removed is not None else "not found",
        )

    async def get_usage_stats(self) -> ProviderUsage:
        if self.fail_usage:
            raise ProviderError(self.name, "usage failed: simulated outage")
        return ProviderUsage(
            storage_used=sum(len(asset.data) for asset in self.assets.values()),
            bandwidth_used=0,
            transformations_used=0,
        )

    async def aclose(self) -> None:
        return None


def fake_from_credentials(account_identifier: str, credentials: dict[str, Any]) -> FakeStorageProvider:
    # Dev accounts can simulate outages through their credential bundle.
    return FakeStorageProvider(
        account_identifier,
        fail_uploads=bool(credentials.get("fail_uploads")),
        fail_deletes=bool(credentials.get("fail_deletes")),
        fail_usage=bool(credentials.get("fail_usage")),
    )
