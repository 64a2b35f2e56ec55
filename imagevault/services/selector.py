"""Storage account selection.

Accounts are scored on remaining capacity and on how long they have been idle,
then one of the best few is drawn at random with probability proportional to
its score.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import random
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imagevault.domain.models import (
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_NEAR_LIMIT,
    StorageAccount,
)
from imagevault.services.capacity import Availability, availability, can_accommodate


logger = logging.getLogger(__name__)

SELECTABLE_STATUSES = (ACCOUNT_STATUS_ACTIVE, ACCOUNT_STATUS_NEAR_LIMIT)

STORAGE_WEIGHT = 0.35
BANDWIDTH_WEIGHT = 0.25
UPLOADS_WEIGHT = 0.25
RECENCY_WEIGHT = 0.15
# Idle time after which an account earns the full recency score.
RECENCY_HORIZON_DAYS = 30.0
DEFAULT_TOP_K = 3


@dataclass(frozen=True)
class ScoredAccount:
    account: StorageAccount
    score: float
    availability: Availability
    recency: float


@dataclass(frozen=True)
class CapacityExhausted:
    # No registered account can take the file; operators need to add capacity.
    file_size: int
    pool_size: int
    eligible: int
    reason: str


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def recency_score(last_used_at: datetime | None, now: datetime) -> float:
    if last_used_at is None:
        return 1.0
    idle_days = (now - _as_utc(last_used_at)).total_seconds() / 86400.0
    return min(max(idle_days, 0.0) / RECENCY_HORIZON_DAYS, 1.0)


def score_account(account: StorageAccount, now: datetime) -> ScoredAccount:
    avail = availability(account)
    recency = recency_score(account.last_used_at, now)
    score = (
        STORAGE_WEIGHT * avail.storage
        + BANDWIDTH_WEIGHT * avail.bandwidth
        + UPLOADS_WEIGHT * avail.uploads
        + RECENCY_WEIGHT * recency
    )
    return ScoredAccount(account=account, score=score, availability=avail, recency=recency)


def weighted_pick(candidates: Sequence[ScoredAccount], rng: random.Random) -> ScoredAccount:
    # Walk the cumulative scores; the first candidate that drives the draw to zero wins.
    total = sum(candidate.score for candidate in candidates)
    draw = rng.random() * total
    for candidate in candidates:
        draw -= candidate.score
        if draw <= 0:
            return candidate
    # Float rounding can leave a tiny positive remainder.
    return candidates[0]


def select_account(
    pool: Iterable[StorageAccount],
    file_size: int,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
    top_k: int = DEFAULT_TOP_K,
) -> StorageAccount | CapacityExhausted:
    rng = rng or random.Random()
    now = now or datetime.now(timezone.utc)
    accounts = list(pool)

    eligible = [account for account in accounts if account.status in SELECTABLE_STATUSES]
    fitting = [account for account in eligible if can_accommodate(account, file_size)]
    if not fitting:
        if not eligible:
            reason = "No available storage accounts"
        else:
            reason = "No storage account can accommodate this file size; all accounts are at capacity"
        return CapacityExhausted(
            file_size=file_size,
            pool_size=len(accounts),
            eligible=len(eligible),
            reason=reason,
        )

    scored = sorted(
        (score_account(account, now) for account in fitting),
        key=lambda item: item.score,
        reverse=True,
    )
    top = scored[: max(1, top_k)]
    chosen = weighted_pick(top, rng)
    logger.debug(
        "storage_account_selected account=%s provider=%s score=%.4f candidates=%s",
        chosen.account.id,
        chosen.account.provider,
        chosen.score,
        len(top),
    )
    return chosen.account


async def load_selectable_pool(session: AsyncSession) -> list[StorageAccount]:
    # Priority first, then least recently used, so equal scores favour idle accounts.
    result = await session.execute(
        select(StorageAccount)
        .where(StorageAccount.status.in_(SELECTABLE_STATUSES))
        .order_by(StorageAccount.priority.desc(), StorageAccount.last_used_at.asc())
    )
    return list(result.scalars().all())
