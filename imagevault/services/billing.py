from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.core.config import GB, MB
from imagevault.core.errors import NotFoundError, ValidationError
from imagevault.domain.models import (
    BILLING_CYCLES,
    BILLING_STATUS_ACTIVE,
    BILLING_STATUS_SUSPENDED,
    BILLING_STATUSES,
    PLANS,
    OrganizationBilling,
)
from imagevault.persistence.db import insert_for
from imagevault.services.capacity import derive_billing_status, usage_percentage


logger = logging.getLogger(__name__)

DEFAULT_PLAN = "free"
# Days until the next invoice after a plan is approved.
BILLING_PERIOD_DAYS = 30
# Annual subscriptions are billed at 80% of twelve monthly payments.
ANNUAL_DISCOUNT = 0.8


@dataclass(frozen=True)
class PlanLimits:
    storage: int
    bandwidth: int
    uploads_per_month: int
    max_file_size: int
    price: int


PLAN_LIMITS: dict[str, PlanLimits] = {
    # Free tenants can only link external images.
    "free": PlanLimits(storage=0, bandwidth=0, uploads_per_month=0, max_file_size=2 * MB, price=0),
    "starter": PlanLimits(
        storage=500 * MB, bandwidth=5 * GB, uploads_per_month=1000, max_file_size=5 * MB, price=5
    ),
    "professional": PlanLimits(
        storage=5 * GB, bandwidth=50 * GB, uploads_per_month=10000, max_file_size=10 * MB, price=15
    ),
    "business": PlanLimits(
        storage=50 * GB,
        bandwidth=500 * GB,
        uploads_per_month=100000,
        max_file_size=25 * MB,
        price=49,
    ),
    "enterprise": PlanLimits(
        storage=500 * GB,
        bandwidth=5000 * GB,
        uploads_per_month=1000000,
        max_file_size=100 * MB,
        price=199,
    ),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_plan_limits(plan: str) -> PlanLimits:
    limits = PLAN_LIMITS.get(plan)
    if limits is None:
        raise ValidationError(f"Invalid plan: {plan}")
    return limits


def list_plans() -> list[dict[str, Any]]:
    return [
        {
            "id": plan,
            "name": plan.capitalize(),
            "storage": limits.storage,
            "bandwidth": limits.bandwidth,
            "uploads_per_month": limits.uploads_per_month,
            "max_file_size": limits.max_file_size,
            "price": limits.price,
        }
        for plan, limits in PLAN_LIMITS.items()
    ]


def _apply_plan_limits(billing: OrganizationBilling, plan: str) -> None:
    limits = get_plan_limits(plan)
    billing.plan = plan
    billing.storage_limit = limits.storage
    billing.bandwidth_limit = limits.bandwidth
    billing.uploads_per_month_limit = limits.uploads_per_month
    billing.max_file_size = limits.max_file_size


def new_billing_values(org_id: str, plan: str = DEFAULT_PLAN, *, now: datetime | None = None) -> dict[str, Any]:
    limits = get_plan_limits(plan)
    now = now or _utc_now()
    return {
        "org_id": org_id,
        "plan": plan,
        "billing_cycle": "monthly",
        "storage_limit": limits.storage,
        "bandwidth_limit": limits.bandwidth,
        "uploads_per_month_limit": limits.uploads_per_month,
        "max_file_size": limits.max_file_size,
        "storage_used": 0,
        "bandwidth_used": 0,
        "uploads_used": 0,
        "cycle_started_at": now,
        "status": BILLING_STATUS_ACTIVE,
        "manually_approved": False,
        "created_at": now,
        "updated_at": now,
    }


async def get_billing(session: AsyncSession, org_id: str) -> OrganizationBilling | None:
    result = await session.execute(
        select(OrganizationBilling).where(OrganizationBilling.org_id == org_id)
    )
    return result.scalar_one_or_none()


async def refresh_billing(session: AsyncSession, org_id: str) -> OrganizationBilling:
    # Re-read the row so checks right before commit see other requests' debits.
    result = await session.execute(
        select(OrganizationBilling)
        .where(OrganizationBilling.org_id == org_id)
        .execution_options(populate_existing=True)
    )
    billing = result.scalar_one_or_none()
    if billing is None:
        raise NotFoundError(f"Billing record not found for organization {org_id}")
    return billing


async def get_or_create_billing(session: AsyncSession, org_id: str) -> OrganizationBilling:
    # Tenants without a billing row start on the free plan.
    billing = await get_billing(session, org_id)
    if billing is not None:
        return billing
    # Race-safe insert: a concurrent first request for the tenant may win.
    insert = insert_for(session)
    stmt = insert(OrganizationBilling).values(**new_billing_values(org_id))
    stmt = stmt.on_conflict_do_nothing(index_elements=[OrganizationBilling.org_id])
    result = await session.execute(stmt)
    await session.commit()
    if result.rowcount:
        logger.info("billing_record_created org_id=%s plan=%s", org_id, DEFAULT_PLAN)
    return await refresh_billing(session, org_id)


async def _require_billing(session: AsyncSession, org_id: str) -> OrganizationBilling:
    billing = await get_billing(session, org_id)
    if billing is None:
        raise NotFoundError(f"Billing record not found for organization {org_id}")
    return billing


async def change_plan(
    session: AsyncSession,
    org_id: str,
    plan: str,
    *,
    approved_by: str | None = None,
    notes: str | None = None,
    billing_cycle: str | None = None,
    now: datetime | None = None,
) -> OrganizationBilling:
    # Plan approval reactivates the tenant; usage is recomputed on the next ledger write.
    now = now or _utc_now()
    get_plan_limits(plan)
    if billing_cycle is not None and billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}")
    billing = await get_or_create_billing(session, org_id)
    _apply_plan_limits(billing, plan)
    if billing_cycle is not None:
        billing.billing_cycle = billing_cycle
    if approved_by:
        billing.manually_approved = True
        billing.approved_by = approved_by
        billing.approved_at = now
    if notes is not None:
        billing.notes = notes
    billing.status = BILLING_STATUS_ACTIVE
    billing.status = derive_billing_status(billing)
    billing.next_billing_date = now + timedelta(days=BILLING_PERIOD_DAYS)
    await session.commit()
    logger.info(
        "billing_plan_changed org_id=%s plan=%s approved_by=%s", org_id, plan, approved_by or "-"
    )
    return billing


async def downgrade_plan(session: AsyncSession, org_id: str, plan: str) -> OrganizationBilling:
    billing = await _require_billing(session, org_id)
    limits = get_plan_limits(plan)
    if billing.storage_used > limits.storage:
        raise ValidationError(
            "Cannot downgrade: current storage usage exceeds the new plan's limit. "
            "Please delete some files first."
        )
    _apply_plan_limits(billing, plan)
    billing.status = derive_billing_status(billing)
    await session.commit()
    logger.info("billing_plan_downgraded org_id=%s plan=%s", org_id, plan)
    return billing


async def set_billing_status(
    session: AsyncSession, org_id: str, status: str, *, notes: str | None = None
) -> OrganizationBilling:
    if status not in BILLING_STATUSES:
        raise ValidationError(f"Invalid billing status: {status}")
    billing = await get_or_create_billing(session, org_id)
    billing.status = status
    if notes is not None:
        billing.notes = notes
    await session.commit()
    logger.info("billing_status_set org_id=%s status=%s", org_id, status)
    return billing


async def suspend_billing(session: AsyncSession, org_id: str, reason: str = "") -> OrganizationBilling:
    return await set_billing_status(session, org_id, BILLING_STATUS_SUSPENDED, notes=reason)


async def reactivate_billing(session: AsyncSession, org_id: str) -> OrganizationBilling:
    # Clear the sticky status first so usage decides between active and exceeded.
    billing = await get_or_create_billing(session, org_id)
    billing.status = BILLING_STATUS_ACTIVE
    billing.status = derive_billing_status(billing)
    await session.commit()
    logger.info("billing_reactivated org_id=%s status=%s", org_id, billing.status)
    return billing


def usage_stats(billing: OrganizationBilling) -> dict[str, Any]:
    return {
        "storage": {
            "used": billing.storage_used,
            "limit": billing.storage_limit,
            "percentage": usage_percentage(billing.storage_used, billing.storage_limit),
        },
        "bandwidth": {
            "used": billing.bandwidth_used,
            "limit": billing.bandwidth_limit,
            "percentage": usage_percentage(billing.bandwidth_used, billing.bandwidth_limit),
        },
        "uploads": {
            "used": billing.uploads_used,
            "limit": billing.uploads_per_month_limit,
            "percentage": usage_percentage(billing.uploads_used, billing.uploads_per_month_limit),
        },
        "plan": billing.plan,
        "status": billing.status,
        "billing_cycle_start": billing.cycle_started_at,
    }


def next_plan(plan: str) -> str | None:
    index = PLANS.index(plan)
    if index == len(PLANS) - 1:
        return None
    return PLANS[index + 1]


def upgrade_eligibility(billing: OrganizationBilling) -> dict[str, Any]:
    upgrade_to = next_plan(billing.plan)
    if upgrade_to is None:
        return {
            "can_upgrade": False,
            "reason": "Already on the highest plan",
            "current_plan": billing.plan,
        }
    return {
        "can_upgrade": True,
        "current_plan": billing.plan,
        "next_plan": upgrade_to,
        "next_plan_limits": next(item for item in list_plans() if item["id"] == upgrade_to),
    }


async def organizations_approaching_limits(
    session: AsyncSession, threshold_pct: float = 80.0
) -> list[dict[str, Any]]:
    result = await session.execute(
        select(OrganizationBilling).where(OrganizationBilling.status == BILLING_STATUS_ACTIVE)
    )
    approaching: list[dict[str, Any]] = []
    for billing in result.scalars().all():
        stats = usage_stats(billing)
        if any(
            stats[dimension]["percentage"] >= threshold_pct
            for dimension in ("storage", "uploads", "bandwidth")
        ):
            approaching.append(
                {"org_id": billing.org_id, "plan": billing.plan, "usage": stats}
            )
    return approaching


async def dashboard_stats(session: AsyncSession) -> dict[str, Any]:
    result = await session.execute(select(OrganizationBilling))
    billings = list(result.scalars().all())
    stats: dict[str, Any] = {
        "total_organizations": len(billings),
        "by_plan": {plan: 0 for plan in PLANS},
        "by_status": {status: 0 for status in BILLING_STATUSES},
        "revenue": {"monthly": 0.0, "annual": 0.0},
        "total_storage": 0,
        "total_bandwidth": 0,
        "total_uploads": 0,
    }
    for billing in billings:
        stats["by_plan"][billing.plan] = stats["by_plan"].get(billing.plan, 0) + 1
        stats["by_status"][billing.status] = stats["by_status"].get(billing.status, 0) + 1
        price = PLAN_LIMITS[billing.plan].price if billing.plan in PLAN_LIMITS else 0
        if billing.billing_cycle == "annual":
            stats["revenue"]["annual"] += price * 12 * ANNUAL_DISCOUNT
        else:
            stats["revenue"]["monthly"] += price
        stats["total_storage"] += billing.storage_used
        stats["total_bandwidth"] += billing.bandwidth_used
        stats["total_uploads"] += billing.uploads_used
    return stats
