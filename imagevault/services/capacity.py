from __future__ import annotations

from dataclasses import dataclass
import math

from imagevault.domain.models import (
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_DISABLED,
    ACCOUNT_STATUS_EXHAUSTED,
    ACCOUNT_STATUS_NEAR_LIMIT,
    BILLING_STATUS_ACTIVE,
    BILLING_STATUS_CANCELLED,
    BILLING_STATUS_EXCEEDED,
    BILLING_STATUS_SUSPENDED,
    OrganizationBilling,
    StorageAccount,
)


# Minimum remaining fraction across dimensions at which an account changes status.
EXHAUSTED_AVAILABILITY = 0.05
NEAR_LIMIT_AVAILABILITY = 0.20

_STICKY_BILLING_STATUSES = frozenset({BILLING_STATUS_SUSPENDED, BILLING_STATUS_CANCELLED})


@dataclass(frozen=True)
class Availability:
    # Fraction of each capacity dimension still unused on an account.
    storage: float
    bandwidth: float
    uploads: float

    @property
    def minimum(self) -> float:
        return min(self.storage, self.bandwidth, self.uploads)

    @property
    def overall(self) -> float:
        return (self.storage + self.bandwidth + self.uploads) / 3


def _fraction_available(limit: int | None, used: int) -> float:
    # Zero or unlimited dimensions never constrain an account.
    if not limit or limit <= 0:
        return 1.0
    return (limit - used) / limit


def availability(account: StorageAccount) -> Availability:
    return Availability(
        storage=_fraction_available(account.storage_limit, account.storage_used or 0),
        bandwidth=_fraction_available(account.bandwidth_limit, account.bandwidth_used or 0),
        uploads=_fraction_available(account.uploads_limit, account.uploads_used or 0),
    )


def remaining_storage(account: StorageAccount) -> float:
    if account.storage_limit is None:
        return math.inf
    return account.storage_limit - (account.storage_used or 0)


def remaining_uploads(account: StorageAccount) -> float:
    if account.uploads_limit is None:
        return math.inf
    return account.uploads_limit - (account.uploads_used or 0)


def can_accommodate(account: StorageAccount, file_size: int) -> bool:
    return remaining_storage(account) >= file_size and remaining_uploads(account) > 0


def derive_account_status(account: StorageAccount) -> str:
    # Disabled accounts stay disabled until an operator re-enables them.
    if account.status == ACCOUNT_STATUS_DISABLED:
        return ACCOUNT_STATUS_DISABLED
    minimum = availability(account).minimum
    if minimum <= EXHAUSTED_AVAILABILITY:
        return ACCOUNT_STATUS_EXHAUSTED
    if minimum <= NEAR_LIMIT_AVAILABILITY:
        return ACCOUNT_STATUS_NEAR_LIMIT
    return ACCOUNT_STATUS_ACTIVE


def usage_percentage(used: int, limit: int | None) -> float:
    if not limit or limit <= 0:
        return 0.0
    return (used / limit) * 100.0


def derive_billing_status(billing: OrganizationBilling) -> str:
    # Suspended and cancelled are operator decisions that usage never overrides.
    if billing.status in _STICKY_BILLING_STATUSES:
        return billing.status
    storage_pct = usage_percentage(billing.storage_used or 0, billing.storage_limit)
    uploads_pct = usage_percentage(billing.uploads_used or 0, billing.uploads_per_month_limit)
    if storage_pct >= 100 or uploads_pct >= 100:
        return BILLING_STATUS_EXCEEDED
    return BILLING_STATUS_ACTIVE
