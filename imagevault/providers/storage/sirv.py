from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Sequence

import httpx

from imagevault.core.errors import ProviderError
from imagevault.domain.models import PROVIDER_SIRV
from imagevault.providers.storage.base import (
    DeleteResult,
    HttpStorageProvider,
    ProviderUsage,
    UploadResult,
    optional_int,
    require_credentials,
)


logger = logging.getLogger(__name__)

# Bearer tokens keyed by client id, shared by every adapter instance in the process.
_token_cache: dict[str, tuple[float, str]] = {}
_token_cache_lock = asyncio.Lock()


async def _get_cached_token(client_id: str, now: float) -> str | None:
    async with _token_cache_lock:
        entry = _token_cache.get(client_id)
        if not entry:
            return None
        expires_at, token = entry
        if expires_at <= now:
            _token_cache.pop(client_id, None)
            return None
        return token


async def _set_cached_token(client_id: str, token: str, expires_at: float) -> None:
    async with _token_cache_lock:
        _token_cache[client_id] = (expires_at, token)


def clear_token_cache() -> None:
    _token_cache.clear()


class SirvProvider(HttpStorageProvider):
    name = PROVIDER_SIRV

    def __init__(
        self,
        credentials: dict[str, Any],
        *,
        client: httpx.AsyncClient | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(client)
        creds = require_credentials(self.name, credentials, ("client_id", "client_secret", "cdn_domain"))
        self._client_id = creds["client_id"]
        self._client_secret = creds["client_secret"]
        self._cdn_base = f"https://{creds['cdn_domain'].removeprefix('https://').rstrip('/')}"
        self._api_base = self._settings.sirv_api_base_url.rstrip("/")
        # Monotonic clock injection for deterministic token expiry tests.
        self._time_provider = time_provider or time.monotonic

    async def _token(self) -> str:
        now = self._time_provider()
        cached = await _get_cached_token(self._client_id, now)
        if cached:
            return cached
        response = await self._request(
            "token",
            "POST",
            f"{self._api_base}/token",
            json={"clientId": self._client_id, "clientSecret": self._client_secret},
        )
        token = self._json(response, "token").get("token")
        if not token:
            raise ProviderError(self.name, "token response did not include a token")
        # Tokens live 20 minutes; the configured TTL refreshes them a minute early.
        await _set_cached_token(self._client_id, token, now + self._settings.sirv_token_ttl_s)
        logger.debug("sirv_token_refreshed client_id=%s", self._client_id)
        return token

    async def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self._token()}"}

    def public_url(self, file_path: str) -> str:
        return f"{self._cdn_base}{file_path}"

    def thumbnail_url(self, file_path: str) -> str:
        size = self._settings.thumbnail_size
        return f"{self.public_url(file_path)}?w={size}&h={size}"

    async def _stat(self, file_path: str) -> dict[str, Any]:
        # Stat only enriches the result; an upload that landed is not failed over it.
        try:
            response = await self._request(
                "stat",
                "GET",
                f"{self._api_base}/files/stat",
                params={"filename": file_path},
                headers=await self._auth_headers(),
            )
            return self._json(response, "stat")
        except ProviderError as exc:
            logger.warning("sirv_stat_unavailable file=%s error=%s", file_path, exc.message)
            return {}

    async def upload(
        self,
        data: bytes,
        *,
        file_name: str,
        folder: str,
        mime_type: str,
        tags: Sequence[str],
    ) -> UploadResult:
        folder = (folder or self._settings.storage_default_folder).strip("/")
        file_path = f"/{folder}/{file_name}"
        headers = await self._auth_headers()
        headers["Content-Type"] = mime_type or "application/octet-stream"
        await self._request(
            "upload",
            "POST",
            f"{self._api_base}/files/upload",
            params={"filename": file_path},
            content=data,
            headers=headers,
        )
        info = await self._stat(file_path)
        meta = info.get("meta") or {}
        return UploadResult(
            # Sirv addresses files by path.
            asset_id=file_path,
            public_url=self.public_url(file_path),
            thumbnail_url=self.thumbnail_url(file_path),
            width=optional_int(meta.get("width")),
            height=optional_int(meta.get("height")),
            format=meta.get("format") or mime_type,
            size=optional_int(info.get("size")) or len(data),
            metadata={"file_path": file_path, "content_type": info.get("contentType"), "tags": list(tags)},
        )

    async def delete(self, asset_id: str) -> DeleteResult:
        try:
            await self._request(
                "delete",
                "POST",
                f"{self._api_base}/files/delete",
                params={"filename": asset_id},
                headers=await self._auth_headers(),
            )
        except ProviderError as exc:
            if exc.status_code == 404:
                return DeleteResult(asset_id=asset_id, deleted=False, message="not found")
            raise
        return DeleteResult(asset_id=asset_id, deleted=True, message="File deleted successfully")

    async def get_usage_stats(self) -> ProviderUsage:
        response = await self._request(
            "usage",
            "GET",
            f"{self._api_base}/account/storage",
            headers=await self._auth_headers(),
        )
        payload = self._json(response, "usage")
        plan = optional_int(payload.get("plan"))
        extra = optional_int(payload.get("extra")) or 0
        return ProviderUsage(
            storage_used=optional_int(payload.get("used")),
            storage_limit=plan + extra if plan is not None else None,
        )
