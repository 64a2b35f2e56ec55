from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.apps.api.deps import Principal, get_db, require_role
from imagevault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from imagevault.apps.api.response import SuccessEnvelope, success_response
from imagevault.domain.models import StorageAccount
from imagevault.persistence.db import pool_stats
from imagevault.services.telemetry import (
    availability,
    counters_snapshot,
    external_latency_by_integration,
    p95_latency,
)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

_METRICS_WINDOW_S = 3600


class HealthResponse(BaseModel):
    status: str
    db: str
    timestamp: str


async def _check_db_health(db: AsyncSession) -> bool:
    # Single round trip; no table reads.
    try:
        await db.execute(select(1))
        return True
    except SQLAlchemyError:
        return False


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    db_ok = await _check_db_health(db)
    payload = HealthResponse(
        status="ok" if db_ok else "degraded",
        db="ok" if db_ok else "degraded",
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return success_response(request=request, data=payload)


@router.get("/health/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def health_metrics(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    # JSON metrics for dashboards; counters reset on process restart.
    result = await db.execute(
        select(StorageAccount.status, func.count()).group_by(StorageAccount.status)
    )
    counters = counters_snapshot()
    payload = {
        "counters": {
            "imagevault_uploads_total": counters.get("uploads_total", 0),
            "imagevault_uploads_denied_total": counters.get("uploads_denied_total", 0),
            "imagevault_capacity_exhausted_total": counters.get("capacity_exhausted_total", 0),
            "imagevault_deletes_total": counters.get("deletes_total", 0),
            "imagevault_orphaned_assets_total": counters.get("orphaned_assets_total", 0),
        },
        "gauges": {
            f"imagevault_storage_accounts_{status}": int(count) for status, count in result.all()
        },
        "all_counters": counters,
        "availability": availability(_METRICS_WINDOW_S),
        "p95_latency_ms": p95_latency(_METRICS_WINDOW_S),
        "external_call_latency_ms": external_latency_by_integration(_METRICS_WINDOW_S),
        "db_pool": pool_stats(),
    }
    return success_response(request=request, data=payload)
