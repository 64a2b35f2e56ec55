from __future__ import annotations

from imagevault.core.config import MB
from imagevault.domain.models import OrganizationBilling
from imagevault.services.billing import new_billing_values
from imagevault.services.quota_guard import (
    DENIED_BILLING_INACTIVE,
    DENIED_FILE_TOO_LARGE,
    DENIED_STORAGE_LIMIT,
    DENIED_UPLOAD_LIMIT,
    check_raw_upload,
    check_upload,
)


def _billing(plan: str = "starter", **overrides: object) -> OrganizationBilling:
    billing = OrganizationBilling(**new_billing_values("org-1", plan))
    for key, value in overrides.items():
        setattr(billing, key, value)
    return billing


def test_free_plan_denies_any_upload_on_storage() -> None:
    decision = check_upload(_billing("free"), 1024)
    assert not decision.allowed
    assert decision.code == DENIED_STORAGE_LIMIT
    assert decision.required == 1024
    assert decision.available == 0


def test_file_larger_than_plan_maximum_is_denied() -> None:
    decision = check_upload(_billing("starter"), 10 * MB)
    assert not decision.allowed
    assert decision.code == DENIED_FILE_TOO_LARGE
    assert decision.available == 5 * MB
    assert "5 MB" in decision.reason


def test_inactive_billing_is_checked_first() -> None:
    decision = check_upload(_billing("starter", status="suspended"), 10 * MB)
    assert decision.code == DENIED_BILLING_INACTIVE


def test_storage_remaining_must_cover_candidate() -> None:
    billing = _billing("starter")
    billing.storage_used = billing.storage_limit - 100
    assert check_upload(billing, 100).allowed
    decision = check_upload(billing, 101)
    assert decision.code == DENIED_STORAGE_LIMIT
    assert decision.available == 100


def test_monthly_upload_count_exhausted() -> None:
    billing = _billing("starter")
    billing.uploads_used = billing.uploads_per_month_limit
    decision = check_upload(billing, 1)
    assert decision.code == DENIED_UPLOAD_LIMIT
    assert decision.required == 1
    assert decision.available == 0


def test_allowed_upload_has_no_code() -> None:
    decision = check_upload(_billing("professional"), 2 * MB)
    assert decision.allowed
    assert decision.code is None


def test_raw_check_ignores_storage_and_upload_counts() -> None:
    billing = _billing("starter")
    billing.storage_used = billing.storage_limit - 50_000
    billing.uploads_used = billing.uploads_per_month_limit
    assert check_raw_upload(billing, 270_054).allowed
    assert check_upload(billing, 270_054).code == DENIED_STORAGE_LIMIT


def test_raw_check_still_enforces_status_and_file_cap() -> None:
    assert check_raw_upload(_billing("starter", status="suspended"), 1).code == DENIED_BILLING_INACTIVE
    decision = check_raw_upload(_billing("starter"), 10 * MB)
    assert decision.code == DENIED_FILE_TOO_LARGE
    assert decision.required == 10 * MB
