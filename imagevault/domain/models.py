from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


PROVIDER_CLOUDINARY = "cloudinary"
PROVIDER_IMAGEKIT = "imagekit"
PROVIDER_SIRV = "sirv"
# Deterministic in-process backend for local development and tests.
PROVIDER_FAKE = "fake"
PROVIDERS = (PROVIDER_CLOUDINARY, PROVIDER_IMAGEKIT, PROVIDER_SIRV, PROVIDER_FAKE)

ENTITY_TYPES = ("case", "feedback", "feature", "organization", "user", "session")

ACCOUNT_STATUS_ACTIVE = "active"
ACCOUNT_STATUS_NEAR_LIMIT = "near_limit"
ACCOUNT_STATUS_EXHAUSTED = "exhausted"
ACCOUNT_STATUS_DISABLED = "disabled"
ACCOUNT_STATUSES = (
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_NEAR_LIMIT,
    ACCOUNT_STATUS_EXHAUSTED,
    ACCOUNT_STATUS_DISABLED,
)

BILLING_STATUS_ACTIVE = "active"
BILLING_STATUS_EXCEEDED = "exceeded"
BILLING_STATUS_SUSPENDED = "suspended"
BILLING_STATUS_CANCELLED = "cancelled"
BILLING_STATUSES = (
    BILLING_STATUS_ACTIVE,
    BILLING_STATUS_EXCEEDED,
    BILLING_STATUS_SUSPENDED,
    BILLING_STATUS_CANCELLED,
)

PLANS = ("free", "starter", "professional", "business", "enterprise")
BILLING_CYCLES = ("monthly", "annual")

# JSONB in Postgres, plain JSON elsewhere so the schema also runs on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class StorageAccount(Base):
    __tablename__ = "storage_accounts"
    __table_args__ = (
        Index("ix_storage_accounts_status_provider", "status", "provider"),
        Index("ix_storage_accounts_last_used_at", "last_used_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    provider: Mapped[str] = mapped_column(String)
    account_identifier: Mapped[str] = mapped_column(String)
    # Opaque per-provider credential bundle; only provider adapters read it.
    credentials_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # NULL limits mean unlimited for that dimension.
    storage_limit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    bandwidth_limit: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    uploads_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transformations_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Usage mirror; written only by the usage ledger.
    storage_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bandwidth_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    uploads_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    transformations_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    usage_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    last_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    status: Mapped[str] = mapped_column(String, default=ACCOUNT_STATUS_ACTIVE, nullable=False)
    # Higher values are loaded first when building the selection pool.
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class OrganizationBilling(Base):
    __tablename__ = "organization_billing"
    __table_args__ = (
        Index("ix_organization_billing_plan_status", "plan", "status"),
        Index("ix_organization_billing_next_billing_date", "next_billing_date"),
    )

    # One row per tenant; created lazily on the free plan.
    org_id: Mapped[str] = mapped_column(String, primary_key=True)
    plan: Mapped[str] = mapped_column(String, default="free", nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String, default="monthly", nullable=False)
    # Limits mirror the static plan table at the time of the last plan change.
    storage_limit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bandwidth_limit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    uploads_per_month_limit: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_file_size: Mapped[int] = mapped_column(BigInteger, default=2 * 1024 * 1024, nullable=False)
    storage_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bandwidth_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    uploads_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cycle_started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    status: Mapped[str] = mapped_column(String, default=BILLING_STATUS_ACTIVE, nullable=False)
    # Manual approval trail for plan changes handled outside a payment processor.
    manually_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    approved_by: Mapped[str | None] = mapped_column(String, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class OrganizationUserUsage(Base):
    __tablename__ = "organization_user_usage"

    # Per-user breakdown of tenant usage for fair-use reporting.
    org_id: Mapped[str] = mapped_column(
        String, ForeignKey("organization_billing.org_id"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    uploads: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    storage_used: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    last_upload_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Image(Base):
    __tablename__ = "images"
    __table_args__ = (
        Index("ix_images_org_entity", "org_id", "entity_type", "entity_id"),
        Index("ix_images_user_id", "user_id"),
        Index("ix_images_provider_account", "provider", "provider_account_id"),
        Index("ix_images_deleted_at", "deleted_at"),
        Index("ix_images_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    org_id: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String)
    # Polymorphic attachment target; existence is validated by the caller.
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    file_name: Mapped[str] = mapped_column(String)
    original_file_name: Mapped[str] = mapped_column(String)
    # Optimized size is what both ledgers are charged with.
    file_size: Mapped[int] = mapped_column(BigInteger)
    original_file_size: Mapped[int] = mapped_column(BigInteger)
    mime_type: Mapped[str] = mapped_column(String)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    provider: Mapped[str] = mapped_column(String)
    provider_account_id: Mapped[str] = mapped_column(String, ForeignKey("storage_accounts.id"))
    provider_asset_id: Mapped[str] = mapped_column(String)
    public_url: Mapped[str] = mapped_column(Text)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    format: Mapped[str | None] = mapped_column(String, nullable=True)
    has_alpha: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_progressive: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    compression_ratio: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    # Soft delete only; rows are retained for billing reconciliation.
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )
