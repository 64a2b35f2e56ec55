from __future__ import annotations

import hashlib
import os
import time
from typing import Any, Callable, Sequence

import httpx

from imagevault.core.errors import ProviderError
from imagevault.domain.models import PROVIDER_CLOUDINARY
from imagevault.providers.storage.base import (
    DeleteResult,
    HttpStorageProvider,
    ProviderUsage,
    UploadResult,
    optional_int,
    require_credentials,
)


def sign_params(params: dict[str, Any], api_secret: str) -> str:
    # Cloudinary signs the sorted, &-joined parameters with the secret appended.
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params) if params[key] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryProvider(HttpStorageProvider):
    name = PROVIDER_CLOUDINARY

    def __init__(
        self,
        credentials: dict[str, Any],
        *,
        client: httpx.AsyncClient | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(client)
        creds = require_credentials(self.name, credentials, ("cloud_name", "api_key", "api_secret"))
        self._cloud_name = creds["cloud_name"]
        self._api_key = creds["api_key"]
        self._api_secret = creds["api_secret"]
        self._time_provider = time_provider or time.time
        self._api_base = f"{self._settings.cloudinary_api_base_url.rstrip('/')}/{self._cloud_name}"

    def _signed(self, params: dict[str, Any]) -> dict[str, Any]:
        params = {**params, "timestamp": int(self._time_provider())}
        return {**params, "api_key": self._api_key, "signature": sign_params(params, self._api_secret)}

    def thumbnail_url(self, public_id: str, file_format: str | None) -> str:
        size = self._settings.thumbnail_size
        suffix = f".{file_format}" if file_format else ""
        return (
            f"{self._settings.cloudinary_delivery_base_url.rstrip('/')}/{self._cloud_name}"
            f"/image/upload/c_fit,w_{size},h_{size}/{public_id}{suffix}"
        )

    async def upload(
        self,
        data: bytes,
        *,
        file_name: str,
        folder: str,
        mime_type: str,
        tags: Sequence[str],
    ) -> UploadResult:
        # Public ids carry no extension; Cloudinary appends the delivered format.
        public_id = os.path.splitext(file_name)[0]
        form = self._signed(
            {
                "folder": folder or self._settings.storage_default_folder,
                "public_id": public_id,
                "tags": ",".join(tags),
            }
        )
        response = await self._request(
            "upload",
            "POST",
            f"{self._api_base}/image/upload",
            data={key: str(value) for key, value in form.items()},
            files={"file": (file_name, data, mime_type)},
        )
        payload = self._json(response, "upload")
        asset_id = payload.get("public_id") or f"{folder}/{public_id}"
        file_format = payload.get("format")
        return UploadResult(
            asset_id=asset_id,
            public_url=payload.get("secure_url") or payload.get("url") or "",
            thumbnail_url=self.thumbnail_url(asset_id, file_format),
            width=optional_int(payload.get("width")),
            height=optional_int(payload.get("height")),
            format=file_format,
            size=optional_int(payload.get("bytes")),
            metadata={
                "version": payload.get("version"),
                "resource_type": payload.get("resource_type"),
            },
        )

    async def delete(self, asset_id: str) -> DeleteResult:
        form = self._signed({"public_id": asset_id})
        response = await self._request(
            "delete",
            "POST",
            f"{self._api_base}/image/destroy",
            data={key: str(value) for key, value in form.items()},
        )
        result = str(self._json(response, "delete").get("result", ""))
        if result == "ok":
            return DeleteResult(asset_id=asset_id, deleted=True, message=result)
        if result == "not found":
            return DeleteResult(asset_id=asset_id, deleted=False, message=result)
        raise ProviderError(self.name, f"delete failed: {result or 'empty result'}")

    async def get_usage_stats(self) -> ProviderUsage:
        response = await self._request(
            "usage",
            "GET",
            f"{self._api_base}/usage",
            auth=(self._api_key, self._api_secret),
        )
        payload = self._json(response, "usage")
        storage = payload.get("storage") or {}
        bandwidth = payload.get("bandwidth") or {}
        transformations = payload.get("transformations") or {}
        return ProviderUsage(
            storage_used=optional_int(storage.get("usage")),
            storage_limit=optional_int(storage.get("limit")),
            bandwidth_used=optional_int(bandwidth.get("usage")),
            bandwidth_limit=optional_int(bandwidth.get("limit")),
            transformations_used=optional_int(transformations.get("usage")),
            transformations_limit=optional_int(transformations.get("limit")),
        )
