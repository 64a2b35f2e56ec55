"""add media storage tables

Revision ID: 0001_media_storage
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_media_storage"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Pool of third-party storage accounts with a local usage mirror.
    op.create_table(
        "storage_accounts",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("account_identifier", sa.String(), nullable=False),
        sa.Column(
            "credentials_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("storage_limit", sa.BigInteger(), nullable=True),
        sa.Column("bandwidth_limit", sa.BigInteger(), nullable=True),
        sa.Column("uploads_limit", sa.Integer(), nullable=True),
        sa.Column("transformations_limit", sa.Integer(), nullable=True),
        sa.Column("storage_used", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("bandwidth_used", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("uploads_used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("transformations_used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("usage_updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("status", sa.String(), server_default=sa.text("'active'"), nullable=False),
        sa.Column("priority", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_used_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
        sa.CheckConstraint(
            "status IN ('active', 'near_limit', 'exhausted', 'disabled')",
            name="ck_storage_accounts_status",
        ),
    )
    op.create_index(
        "ix_storage_accounts_status_provider", "storage_accounts", ["status", "provider"], unique=False
    )
    op.create_index(
        "ix_storage_accounts_last_used_at", "storage_accounts", ["last_used_at"], unique=False
    )

    # One billing row per organization; limits mirror the plan table.
    op.create_table(
        "organization_billing",
        sa.Column("org_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("plan", sa.String(), server_default=sa.text("'free'"), nullable=False),
        sa.Column("billing_cycle", sa.String(), server_default=sa.text("'monthly'"), nullable=False),
        sa.Column("storage_limit", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("bandwidth_limit", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column(
            "uploads_per_month_limit", sa.Integer(), server_default=sa.text("0"), nullable=False
        ),
        sa.Column("max_file_size", sa.BigInteger(), server_default=sa.text("2097152"), nullable=False),
        sa.Column("storage_used", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("bandwidth_used", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("uploads_used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cycle_started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("status", sa.String(), server_default=sa.text("'active'"), nullable=False),
        sa.Column("manually_approved", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("approved_by", sa.String(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
        sa.CheckConstraint(
            "plan IN ('free', 'starter', 'professional', 'business', 'enterprise')",
            name="ck_organization_billing_plan",
        ),
        sa.CheckConstraint(
            "status IN ('active', 'exceeded', 'suspended', 'cancelled')",
            name="ck_organization_billing_status",
        ),
    )
    op.create_index(
        "ix_organization_billing_plan_status", "organization_billing", ["plan", "status"], unique=False
    )
    op.create_index(
        "ix_organization_billing_next_billing_date",
        "organization_billing",
        ["next_billing_date"],
        unique=False,
    )

    # Per-user breakdown of organization usage.
    op.create_table(
        "organization_user_usage",
        sa.Column(
            "org_id",
            sa.String(),
            sa.ForeignKey("organization_billing.org_id"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("user_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("uploads", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("storage_used", sa.BigInteger(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_upload_at", sa.DateTime(timezone=True), nullable=True),
    )

    # Image registry; rows are soft-deleted only.
    op.create_table(
        "images",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("original_file_name", sa.String(), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("original_file_size", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column(
            "provider_account_id",
            sa.String(),
            sa.ForeignKey("storage_accounts.id"),
            nullable=False,
        ),
        sa.Column("provider_asset_id", sa.String(), nullable=False),
        sa.Column("public_url", sa.Text(), nullable=False),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("format", sa.String(), nullable=True),
        sa.Column("has_alpha", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_progressive", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("compression_ratio", sa.Float(), server_default=sa.text("1.0"), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_images_org_entity", "images", ["org_id", "entity_type", "entity_id"], unique=False
    )
    op.create_index("ix_images_user_id", "images", ["user_id"], unique=False)
    op.create_index(
        "ix_images_provider_account", "images", ["provider", "provider_account_id"], unique=False
    )
    op.create_index("ix_images_deleted_at", "images", ["deleted_at"], unique=False)
    op.create_index("ix_images_created_at", "images", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_images_created_at", table_name="images")
    op.drop_index("ix_images_deleted_at", table_name="images")
    op.drop_index("ix_images_provider_account", table_name="images")
    op.drop_index("ix_images_user_id", table_name="images")
    op.drop_index("ix_images_org_entity", table_name="images")
    op.drop_table("images")
    op.drop_table("organization_user_usage")
    op.drop_index("ix_organization_billing_next_billing_date", table_name="organization_billing")
    op.drop_index("ix_organization_billing_plan_status", table_name="organization_billing")
    op.drop_table("organization_billing")
    op.drop_index("ix_storage_accounts_last_used_at", table_name="storage_accounts")
    op.drop_index("ix_storage_accounts_status_provider", table_name="storage_accounts")
    op.drop_table("storage_accounts")
