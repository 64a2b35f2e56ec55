from __future__ import annotations


class ImageVaultError(Exception):
    """Base error for imagevault."""


class ValidationError(ImageVaultError):
    """Missing or invalid request shape; the caller must fix the input."""


class NotFoundError(ImageVaultError):
    """Unknown image, storage account or organization id."""


class ImageAlreadyDeletedError(ImageVaultError):
    """Image was soft-deleted before this request reached it."""


class OptimizationError(ImageVaultError):
    """Upload could not be decoded or re-encoded as an image."""


class ProviderConfigError(ImageVaultError):
    """Missing or invalid storage provider configuration."""


class ProviderError(ImageVaultError):
    """Storage provider network, auth or remote failure."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code


class RegistryCommitError(ImageVaultError):
    """Remote upload succeeded but the local record could not be committed."""

    def __init__(
        self,
        *,
        provider: str,
        provider_asset_id: str,
        provider_account_id: str,
        compensated: bool,
    ) -> None:
        state = "remote asset deleted" if compensated else "remote asset orphaned"
        super().__init__(
            f"Failed to persist image record ({state}): provider={provider} asset={provider_asset_id}"
        )
        self.provider = provider
        self.provider_asset_id = provider_asset_id
        self.provider_account_id = provider_account_id
        self.compensated = compensated
