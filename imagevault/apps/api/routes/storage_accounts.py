from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.apps.api.deps import (
    Principal,
    get_db,
    get_provider_factory,
    get_usage_ledger,
    require_role,
)
from imagevault.apps.api.openapi import DEFAULT_ERROR_RESPONSES, UPLOAD_ERROR_RESPONSES
from imagevault.apps.api.response import SuccessEnvelope, success_response
from imagevault.domain.models import StorageAccount
from imagevault.services import storage_accounts as accounts_service
from imagevault.services.images import ProviderFactory
from imagevault.services.ledger import UsageLedger

router = APIRouter(
    prefix="/storage-accounts", tags=["storage-accounts"], responses=DEFAULT_ERROR_RESPONSES
)


class StorageAccountResponse(BaseModel):
    # Credentials are write-only and never echoed back.
    id: str
    provider: str
    account_identifier: str
    status: str
    priority: int
    storage_limit: int | None
    bandwidth_limit: int | None
    uploads_limit: int | None
    transformations_limit: int | None
    storage_used: int
    bandwidth_used: int
    uploads_used: int
    transformations_used: int
    last_used_at: str | None
    last_reset_at: str | None
    usage_updated_at: str | None


class StorageAccountCreateRequest(BaseModel):
    provider: str
    account_identifier: str = Field(min_length=1)
    credentials: dict[str, Any]
    storage_limit: int | None = Field(default=None, ge=0)
    bandwidth_limit: int | None = Field(default=None, ge=0)
    uploads_limit: int | None = Field(default=None, ge=0)
    transformations_limit: int | None = Field(default=None, ge=0)
    priority: int = 0

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "provider": "cloudinary",
                    "account_identifier": "cloudinary-1",
                    "credentials": {"cloud_name": "demo", "api_key": "123", "api_secret": "***"},
                    "storage_limit": 26843545600,
                    "bandwidth_limit": 26843545600,
                    "priority": 1,
                }
            ]
        },
    }


class StorageAccountUpdateRequest(BaseModel):
    account_identifier: str | None = Field(default=None, min_length=1)
    credentials: dict[str, Any] | None = None
    storage_limit: int | None = Field(default=None, ge=0)
    bandwidth_limit: int | None = Field(default=None, ge=0)
    uploads_limit: int | None = Field(default=None, ge=0)
    transformations_limit: int | None = Field(default=None, ge=0)
    priority: int | None = None
    status: str | None = None

    model_config = {"extra": "forbid"}


class SyncOutcomeResponse(BaseModel):
    account_id: str
    account_identifier: str
    ok: bool
    error: str | None


class ResetResponse(BaseModel):
    accounts_reset: int
    organizations_reset: int


def _to_response(account: StorageAccount) -> StorageAccountResponse:
    return StorageAccountResponse(
        id=account.id,
        provider=account.provider,
        account_identifier=account.account_identifier,
        status=account.status,
        priority=account.priority,
        storage_limit=account.storage_limit,
        bandwidth_limit=account.bandwidth_limit,
        uploads_limit=account.uploads_limit,
        transformations_limit=account.transformations_limit,
        storage_used=account.storage_used,
        bandwidth_used=account.bandwidth_used,
        uploads_used=account.uploads_used,
        transformations_used=account.transformations_used,
        last_used_at=account.last_used_at.isoformat() if account.last_used_at else None,
        last_reset_at=account.last_reset_at.isoformat() if account.last_reset_at else None,
        usage_updated_at=account.usage_updated_at.isoformat() if account.usage_updated_at else None,
    )


@router.get("", response_model=SuccessEnvelope[list[StorageAccountResponse]])
async def list_storage_accounts(
    request: Request,
    provider: str | None = Query(default=None),
    status: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    accounts = await accounts_service.list_accounts(db, provider=provider, status=status)
    return success_response(request=request, data=[_to_response(account) for account in accounts])


@router.post("", status_code=201, response_model=SuccessEnvelope[StorageAccountResponse])
async def create_storage_account(
    request: Request,
    payload: StorageAccountCreateRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    account = await accounts_service.create_account(
        db,
        provider=payload.provider,
        account_identifier=payload.account_identifier,
        credentials=payload.credentials,
        storage_limit=payload.storage_limit,
        bandwidth_limit=payload.bandwidth_limit,
        uploads_limit=payload.uploads_limit,
        transformations_limit=payload.transformations_limit,
        priority=payload.priority,
    )
    return success_response(request=request, data=_to_response(account))


@router.get("/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def storage_stats(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    return success_response(request=request, data=await accounts_service.overall_usage_stats(db))


@router.post(
    "/sync",
    response_model=SuccessEnvelope[list[SyncOutcomeResponse]],
    responses={502: UPLOAD_ERROR_RESPONSES[502]},
)
async def sync_all_storage_accounts(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict:
    outcomes = await accounts_service.sync_all_accounts_usage(
        db, provider_factory=provider_factory, ledger=ledger
    )
    payload = [
        SyncOutcomeResponse(
            account_id=outcome.account_id,
            account_identifier=outcome.account_identifier,
            ok=outcome.ok,
            error=outcome.error,
        )
        for outcome in outcomes
    ]
    return success_response(request=request, data=payload)


@router.post("/maintenance/reset-monthly", response_model=SuccessEnvelope[ResetResponse])
async def reset_monthly_usage(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict:
    summary = await ledger.reset_monthly_usage(db)
    await db.commit()
    payload = ResetResponse(
        accounts_reset=summary.accounts_reset, organizations_reset=summary.organizations_reset
    )
    return success_response(request=request, data=payload)


@router.patch("/{account_id}", response_model=SuccessEnvelope[StorageAccountResponse])
async def update_storage_account(
    request: Request,
    account_id: str,
    payload: StorageAccountUpdateRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    updates = payload.model_dump(exclude_unset=True)
    if "credentials" in updates:
        updates["credentials_json"] = updates.pop("credentials")
    account = await accounts_service.update_account(db, account_id, updates)
    return success_response(request=request, data=_to_response(account))


@router.post(
    "/{account_id}/sync",
    response_model=SuccessEnvelope[StorageAccountResponse],
    responses={502: UPLOAD_ERROR_RESPONSES[502]},
)
async def sync_storage_account(
    request: Request,
    account_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    ledger: UsageLedger = Depends(get_usage_ledger),
) -> dict:
    account = await accounts_service.sync_account_usage(
        db, account_id, provider_factory=provider_factory, ledger=ledger
    )
    return success_response(request=request, data=_to_response(account))
