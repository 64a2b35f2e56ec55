from __future__ import annotations

from dataclasses import dataclass

from imagevault.core.config import MB
from imagevault.domain.models import BILLING_STATUS_ACTIVE, OrganizationBilling


DENIED_BILLING_INACTIVE = "BILLING_INACTIVE"
DENIED_FILE_TOO_LARGE = "FILE_TOO_LARGE"
DENIED_STORAGE_LIMIT = "STORAGE_LIMIT_EXCEEDED"
DENIED_UPLOAD_LIMIT = "UPLOAD_LIMIT_EXCEEDED"


@dataclass(frozen=True)
class QuotaDecision:
    # Business outcome of a quota check; denials are expected and not raised.
    allowed: bool
    code: str | None = None
    reason: str | None = None
    required: int | None = None
    available: int | None = None


_ALLOWED = QuotaDecision(allowed=True)


def _format_mb(value: int) -> str:
    megabytes = value / MB
    return f"{megabytes:g}"


def check_raw_upload(billing: OrganizationBilling, raw_size: int) -> QuotaDecision:
    """Rules that hold before optimization: an active plan and the per-file cap.

    Storage and monthly upload counts are only judged on the optimized size.
    """
    if billing.status != BILLING_STATUS_ACTIVE:
        return QuotaDecision(
            allowed=False,
            code=DENIED_BILLING_INACTIVE,
            reason=f"Billing status is not active ({billing.status})",
        )

    if raw_size > billing.max_file_size:
        return QuotaDecision(
            allowed=False,
            code=DENIED_FILE_TOO_LARGE,
            reason=f"File size exceeds maximum allowed ({_format_mb(billing.max_file_size)} MB)",
            required=raw_size,
            available=billing.max_file_size,
        )

    return _ALLOWED


def check_upload(billing: OrganizationBilling, candidate_size: int) -> QuotaDecision:
    # Order matters: callers surface the first failing rule.
    decision = check_raw_upload(billing, candidate_size)
    if not decision.allowed:
        return decision

    storage_remaining = billing.storage_limit - billing.storage_used
    if storage_remaining < candidate_size:
        return QuotaDecision(
            allowed=False,
            code=DENIED_STORAGE_LIMIT,
            reason="Organization storage limit exceeded. Please upgrade your plan.",
            required=candidate_size,
            available=max(storage_remaining, 0),
        )

    uploads_remaining = billing.uploads_per_month_limit - billing.uploads_used
    if uploads_remaining <= 0:
        return QuotaDecision(
            allowed=False,
            code=DENIED_UPLOAD_LIMIT,
            reason=(
                "Monthly upload limit exceeded. Please upgrade your plan "
                "or wait for the next billing cycle."
            ),
            required=1,
            available=0,
        )

    return _ALLOWED
