from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Protocol, Sequence

import httpx

from imagevault.core.config import get_settings
from imagevault.core.errors import ProviderConfigError, ProviderError
from imagevault.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadResult:
    asset_id: str
    public_url: str
    thumbnail_url: str | None
    width: int | None = None
    height: int | None = None
    format: str | None = None
    size: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteResult:
    asset_id: str
    # False when the backend reports the asset was already gone.
    deleted: bool
    message: str = ""


@dataclass(frozen=True)
class ProviderUsage:
    # None means the backend does not report that dimension.
    storage_used: int | None
    storage_limit: int | None = None
    bandwidth_used: int | None = None
    bandwidth_limit: int | None = None
    transformations_used: int | None = None
    transformations_limit: int | None = None


class StorageProvider(Protocol):
    name: str

    async def upload(
        self,
        data: bytes,
        *,
        file_name: str,
        folder: str,
        mime_type: str,
        tags: Sequence[str],
    ) -> UploadResult:
        ...

    async def delete(self, asset_id: str) -> DeleteResult:
        ...

    async def get_usage_stats(self) -> ProviderUsage:
        ...

    async def aclose(self) -> None:
        ...


def require_credentials(provider: str, credentials: dict[str, Any], keys: Sequence[str]) -> dict[str, str]:
    # Fail at construction so a misconfigured account never reaches the network.
    missing = [key for key in keys if not credentials.get(key)]
    if missing:
        raise ProviderConfigError(f"{provider} credentials missing: {', '.join(missing)}")
    return {key: str(credentials[key]) for key in keys}


class HttpStorageProvider:
    """Shared HTTP plumbing for REST-backed storage providers.

    Every outbound call goes through ``_request`` so transport failures and
    non-2xx responses surface uniformly as ``ProviderError`` and latency lands
    in telemetry. Calls are never retried here; the caller decides.
    """

    name = "http"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # One pooled client per provider instance.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        # Injected clients belong to the caller.
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client = self._get_client()
        integration = f"storage.{self.name}"
        start = time.monotonic()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=integration,
                operation=operation,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning(
                "storage_provider_call_failed provider=%s operation=%s error=%s",
                self.name,
                operation,
                type(exc).__name__,
            )
            raise ProviderError(self.name, f"{operation} request failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(
                integration=integration,
                operation=operation,
                latency_ms=latency_ms,
                success=False,
            )
            logger.warning(
                "storage_provider_call_rejected provider=%s operation=%s status=%s",
                self.name,
                operation,
                response.status_code,
            )
            raise ProviderError(
                self.name,
                f"{operation} failed with status {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )

        record_external_call(
            integration=integration,
            operation=operation,
            latency_ms=latency_ms,
            success=True,
        )
        return response

    def _json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(self.name, f"{operation} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(self.name, f"{operation} returned an unexpected payload")
        return payload


def _error_detail(response: httpx.Response) -> str:
    # Keep provider error bodies short; they can echo request payloads.
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error") or payload.get("message")
        if isinstance(error, dict):
            error = error.get("message")
        if error:
            return str(error)[:200]
    return str(payload)[:200]


def optional_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
