from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.apps.api.deps import Principal, get_db, require_role
from imagevault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from imagevault.apps.api.response import SuccessEnvelope, success_response
from imagevault.core.config import get_settings
from imagevault.domain.models import OrganizationBilling
from imagevault.services import billing as billing_service

router = APIRouter(prefix="/billing", tags=["billing"], responses=DEFAULT_ERROR_RESPONSES)


class BillingResponse(BaseModel):
    org_id: str
    plan: str
    billing_cycle: str
    status: str
    storage_limit: int
    bandwidth_limit: int
    uploads_per_month_limit: int
    max_file_size: int
    storage_used: int
    bandwidth_used: int
    uploads_used: int
    cycle_started_at: str | None
    manually_approved: bool
    approved_by: str | None
    approved_at: str | None
    next_billing_date: str | None
    notes: str | None


class PlanResponse(BaseModel):
    id: str
    name: str
    storage: int
    bandwidth: int
    uploads_per_month: int
    max_file_size: int
    price: int


class PlanChangeRequest(BaseModel):
    plan: str
    billing_cycle: str | None = None
    notes: str | None = None

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [{"plan": "professional", "billing_cycle": "annual", "notes": "Invoice #1042 paid"}]
        },
    }


class DowngradeRequest(BaseModel):
    plan: str

    model_config = {"extra": "forbid"}


class SuspendRequest(BaseModel):
    reason: str = Field(default="", max_length=1000)

    model_config = {"extra": "forbid"}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(billing: OrganizationBilling) -> BillingResponse:
    return BillingResponse(
        org_id=billing.org_id,
        plan=billing.plan,
        billing_cycle=billing.billing_cycle,
        status=billing.status,
        storage_limit=billing.storage_limit,
        bandwidth_limit=billing.bandwidth_limit,
        uploads_per_month_limit=billing.uploads_per_month_limit,
        max_file_size=billing.max_file_size,
        storage_used=billing.storage_used,
        bandwidth_used=billing.bandwidth_used,
        uploads_used=billing.uploads_used,
        cycle_started_at=_iso(billing.cycle_started_at),
        manually_approved=billing.manually_approved,
        approved_by=billing.approved_by,
        approved_at=_iso(billing.approved_at),
        next_billing_date=_iso(billing.next_billing_date),
        notes=billing.notes,
    )


@router.get("", response_model=SuccessEnvelope[BillingResponse])
async def get_billing(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    billing = await billing_service.get_or_create_billing(db, principal.org_id)
    return success_response(request=request, data=_to_response(billing))


@router.get("/plans", response_model=SuccessEnvelope[list[PlanResponse]])
async def list_plans(
    request: Request,
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    plans = [PlanResponse(**plan) for plan in billing_service.list_plans()]
    return success_response(request=request, data=plans)


@router.get("/usage", response_model=SuccessEnvelope[dict[str, Any]])
async def get_usage(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    billing = await billing_service.get_or_create_billing(db, principal.org_id)
    return success_response(request=request, data=billing_service.usage_stats(billing))


@router.get("/upgrade", response_model=SuccessEnvelope[dict[str, Any]])
async def get_upgrade_eligibility(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    billing = await billing_service.get_or_create_billing(db, principal.org_id)
    return success_response(request=request, data=billing_service.upgrade_eligibility(billing))


@router.post("/downgrade", response_model=SuccessEnvelope[BillingResponse])
async def downgrade(
    request: Request,
    payload: DowngradeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    billing = await billing_service.downgrade_plan(db, principal.org_id, payload.plan)
    return success_response(request=request, data=_to_response(billing))


@router.get("/admin/approaching", response_model=SuccessEnvelope[list[dict[str, Any]]])
async def approaching_limits(
    request: Request,
    threshold_pct: float | None = Query(default=None, ge=0, le=100),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    threshold = threshold_pct if threshold_pct is not None else get_settings().billing_warning_threshold_pct
    rows = await billing_service.organizations_approaching_limits(db, threshold_pct=threshold)
    return success_response(request=request, data=rows)


@router.get("/admin/dashboard", response_model=SuccessEnvelope[dict[str, Any]])
async def dashboard(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    return success_response(request=request, data=await billing_service.dashboard_stats(db))


@router.post("/admin/organizations/{org_id}/plan", response_model=SuccessEnvelope[BillingResponse])
async def approve_plan(
    request: Request,
    org_id: str,
    payload: PlanChangeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    # Manual approval; the approving operator is recorded on the billing row.
    billing = await billing_service.change_plan(
        db,
        org_id,
        payload.plan,
        approved_by=principal.user_id,
        notes=payload.notes,
        billing_cycle=payload.billing_cycle,
    )
    return success_response(request=request, data=_to_response(billing))


@router.post("/admin/organizations/{org_id}/suspend", response_model=SuccessEnvelope[BillingResponse])
async def suspend(
    request: Request,
    org_id: str,
    payload: SuspendRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    billing = await billing_service.suspend_billing(db, org_id, payload.reason)
    return success_response(request=request, data=_to_response(billing))


@router.post(
    "/admin/organizations/{org_id}/reactivate", response_model=SuccessEnvelope[BillingResponse]
)
async def reactivate(
    request: Request,
    org_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    billing = await billing_service.reactivate_billing(db, org_id)
    return success_response(request=request, data=_to_response(billing))
