from __future__ import annotations

import math

from imagevault.domain.models import OrganizationBilling, StorageAccount
from imagevault.services.billing import new_billing_values
from imagevault.services.capacity import (
    availability,
    can_accommodate,
    derive_account_status,
    derive_billing_status,
    remaining_storage,
    usage_percentage,
)


def _account(**overrides: object) -> StorageAccount:
    values: dict[str, object] = {
        "id": "acct-1",
        "provider": "fake",
        "account_identifier": "fake-1",
        "storage_limit": 100,
        "storage_used": 0,
        "bandwidth_limit": None,
        "bandwidth_used": 0,
        "uploads_limit": None,
        "uploads_used": 0,
        "status": "active",
    }
    values.update(overrides)
    return StorageAccount(**values)


def test_status_thresholds_follow_least_available_dimension() -> None:
    assert derive_account_status(_account(storage_used=95)) == "exhausted"
    assert derive_account_status(_account(storage_used=81)) == "near_limit"
    assert derive_account_status(_account(storage_used=79)) == "active"


def test_upload_dimension_can_exhaust_an_account_with_free_storage() -> None:
    account = _account(storage_used=0, uploads_limit=20, uploads_used=19)
    assert availability(account).minimum == 0.05
    assert derive_account_status(account) == "exhausted"


def test_disabled_account_is_never_reactivated_by_usage() -> None:
    assert derive_account_status(_account(storage_used=0, status="disabled")) == "disabled"


def test_unlimited_dimensions_do_not_constrain() -> None:
    account = _account(storage_limit=None, storage_used=10**12)
    assert remaining_storage(account) == math.inf
    assert availability(account).storage == 1.0
    assert derive_account_status(account) == "active"
    assert can_accommodate(account, 10**9)


def test_can_accommodate_requires_room_and_an_upload_slot() -> None:
    assert can_accommodate(_account(storage_used=60), 40)
    assert not can_accommodate(_account(storage_used=61), 40)
    assert not can_accommodate(_account(uploads_limit=5, uploads_used=5), 1)


def test_usage_percentage_treats_zero_limit_as_zero() -> None:
    assert usage_percentage(50, 0) == 0.0
    assert usage_percentage(50, None) == 0.0
    assert usage_percentage(25, 100) == 25.0


def test_billing_status_exceeded_at_full_usage() -> None:
    billing = OrganizationBilling(**new_billing_values("org-1", "starter"))
    billing.storage_used = billing.storage_limit
    assert derive_billing_status(billing) == "exceeded"
    billing.storage_used = 0
    billing.uploads_used = billing.uploads_per_month_limit
    assert derive_billing_status(billing) == "exceeded"
    billing.uploads_used = 0
    assert derive_billing_status(billing) == "active"


def test_suspended_billing_is_sticky() -> None:
    billing = OrganizationBilling(**new_billing_values("org-1", "starter"))
    billing.status = "suspended"
    billing.storage_used = billing.storage_limit
    assert derive_billing_status(billing) == "suspended"
