from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import httpx

from imagevault.core.errors import ProviderError
from imagevault.domain.models import PROVIDER_IMAGEKIT
from imagevault.providers.storage.base import (
    DeleteResult,
    HttpStorageProvider,
    ProviderUsage,
    UploadResult,
    optional_int,
    require_credentials,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ImageKitProvider(HttpStorageProvider):
    name = PROVIDER_IMAGEKIT

    def __init__(
        self,
        credentials: dict[str, Any],
        *,
        client: httpx.AsyncClient | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(client)
        creds = require_credentials(self.name, credentials, ("public_key", "private_key", "url_endpoint"))
        self._public_key = creds["public_key"]
        self._private_key = creds["private_key"]
        self._url_endpoint = creds["url_endpoint"].rstrip("/")
        self._time_provider = time_provider or _utc_now

    @property
    def _auth(self) -> tuple[str, str]:
        # ImageKit uses the private key as the basic-auth user with an empty password.
        return (self._private_key, "")

    def thumbnail_url(self, url: str) -> str:
        size = self._settings.thumbnail_size
        return f"{url}?tr=w-{size},h-{size},c-at_max"

    async def upload(
        self,
        data: bytes,
        *,
        file_name: str,
        folder: str,
        mime_type: str,
        tags: Sequence[str],
    ) -> UploadResult:
        response = await self._request(
            "upload",
            "POST",
            self._settings.imagekit_upload_url,
            auth=self._auth,
            data={
                "fileName": file_name,
                "folder": f"/{(folder or self._settings.storage_default_folder).lstrip('/')}",
                "tags": ",".join(tags),
                "useUniqueFileName": "true",
            },
            files={"file": (file_name, data, mime_type)},
        )
        payload = self._json(response, "upload")
        url = payload.get("url") or ""
        return UploadResult(
            asset_id=str(payload.get("fileId") or ""),
            public_url=url,
            # Prefer the backend's own thumbnail when it returns one.
            thumbnail_url=payload.get("thumbnailUrl") or self.thumbnail_url(url),
            width=optional_int(payload.get("width")),
            height=optional_int(payload.get("height")),
            format=payload.get("fileType"),
            size=optional_int(payload.get("size")),
            metadata={"file_path": payload.get("filePath"), "name": payload.get("name")},
        )

    async def delete(self, asset_id: str) -> DeleteResult:
        try:
            await self._request(
                "delete",
                "DELETE",
                f"{self._settings.imagekit_api_base_url.rstrip('/')}/files/{asset_id}",
                auth=self._auth,
            )
        except ProviderError as exc:
            # Already gone remotely; the caller still releases the local record.
            if exc.status_code == 404:
                return DeleteResult(asset_id=asset_id, deleted=False, message="not found")
            raise
        return DeleteResult(asset_id=asset_id, deleted=True, message="File deleted successfully")

    async def get_usage_stats(self) -> ProviderUsage:
        # Usage is reported for a date range; ask for the current month to date.
        now = self._time_provider()
        start = now.replace(day=1)
        response = await self._request(
            "usage",
            "GET",
            f"{self._settings.imagekit_api_base_url.rstrip('/')}/accounts/usage",
            auth=self._auth,
            params={"startDate": start.date().isoformat(), "endDate": now.date().isoformat()},
        )
        payload = self._json(response, "usage")
        return ProviderUsage(
            storage_used=optional_int(payload.get("mediaLibraryStorageBytes")),
            bandwidth_used=optional_int(payload.get("bandwidthBytes")),
            transformations_used=optional_int(payload.get("extensionUnitsCount")),
        )
