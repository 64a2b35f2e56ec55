from __future__ import annotations

import httpx

from imagevault.core.errors import ProviderConfigError
from imagevault.domain.models import (
    PROVIDER_CLOUDINARY,
    PROVIDER_FAKE,
    PROVIDER_IMAGEKIT,
    PROVIDER_SIRV,
    StorageAccount,
)
from imagevault.providers.storage.base import StorageProvider
from imagevault.providers.storage.cloudinary import CloudinaryProvider
from imagevault.providers.storage.fake import fake_from_credentials
from imagevault.providers.storage.imagekit import ImageKitProvider
from imagevault.providers.storage.sirv import SirvProvider


def get_storage_provider(
    account: StorageAccount, *, client: httpx.AsyncClient | None = None
) -> StorageProvider:
    # Build a fresh adapter per request from the account's own credentials.
    provider = (account.provider or "").lower()
    credentials = account.credentials_json or {}

    if provider == PROVIDER_CLOUDINARY:
        return CloudinaryProvider(credentials, client=client)
    if provider == PROVIDER_IMAGEKIT:
        return ImageKitProvider(credentials, client=client)
    if provider == PROVIDER_SIRV:
        return SirvProvider(credentials, client=client)
    if provider == PROVIDER_FAKE:
        return fake_from_credentials(account.account_identifier, credentials)

    raise ProviderConfigError(f"Unsupported storage provider: {account.provider}")
