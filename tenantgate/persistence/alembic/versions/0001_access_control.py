"""add tenant licensing, access grants, pricing and decision logs

Revision ID: 0001_access_control
Revises:
Create Date: 2026-10-16
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_access_control"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "user_types",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("platform_role", sa.String(), nullable=True),
        sa.Column("user_type_id", sa.String(), sa.ForeignKey("user_types.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"], unique=False)

    op.create_table(
        "applications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_applications_slug", "applications", ["slug"], unique=True)

    # Seat counters are guarded in SQL as well as by conditional updates.
    op.create_table(
        "tenant_application_licenses",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("application_id", sa.String(), sa.ForeignKey("applications.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seat_capacity", sa.Integer(), nullable=True),
        sa.Column("seats_used", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "application_id", name="uq_tenant_application_license"),
        sa.CheckConstraint("seats_used >= 0", name="ck_license_seats_used_nonnegative"),
    )
    op.create_index(
        "ix_tenant_application_licenses_tenant_id",
        "tenant_application_licenses",
        ["tenant_id"],
        unique=False,
    )
    op.create_index(
        "ix_tenant_application_licenses_application_id",
        "tenant_application_licenses",
        ["application_id"],
        unique=False,
    )

    op.create_table(
        "user_application_grants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("application_id", sa.String(), sa.ForeignKey("applications.id"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("role_in_app", sa.String(), nullable=False),
        sa.Column("granted_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("price_snapshot", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency_snapshot", sa.String(length=3), nullable=False),
        sa.Column("billing_cycle_snapshot", sa.String(), nullable=False),
        sa.Column("user_type_id_snapshot", sa.String(), nullable=True),
        sa.Column("pricing_id_snapshot", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_application_grants_user_id", "user_application_grants", ["user_id"], unique=False)
    op.create_index(
        "ix_user_application_grants_tenant_app",
        "user_application_grants",
        ["tenant_id", "application_id"],
        unique=False,
    )
    # One active grant per triple; revoked rows keep their pricing history.
    op.create_index(
        "uq_user_application_grants_active",
        "user_application_grants",
        ["user_id", "tenant_id", "application_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "application_pricing",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("application_id", sa.String(), sa.ForeignKey("applications.id"), nullable=False),
        sa.Column("user_type_id", sa.String(), sa.ForeignKey("user_types.id"), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("billing_cycle", sa.String(), nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=False),
        sa.Column("valid_to", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("price >= 0", name="ck_application_pricing_price_nonnegative"),
    )
    op.create_index(
        "ix_application_pricing_lookup",
        "application_pricing",
        ["application_id", "user_type_id", "valid_from"],
        unique=False,
    )

    op.create_table(
        "access_decision_logs",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("application_id", sa.String(), nullable=True),
        sa.Column("application_slug", sa.String(), nullable=True),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("reason_code", sa.String(), nullable=True),
        sa.Column("access_source", sa.String(), nullable=True),
        sa.Column("api_path", sa.String(), nullable=True),
        sa.Column("http_method", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_access_decision_logs_user_id", "access_decision_logs", ["user_id"], unique=False)
    op.create_index(
        "ix_access_decision_logs_tenant_occurred",
        "access_decision_logs",
        ["tenant_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_events_request_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_id", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_access_decision_logs_tenant_occurred", table_name="access_decision_logs")
    op.drop_index("ix_access_decision_logs_user_id", table_name="access_decision_logs")
    op.drop_table("access_decision_logs")
    op.drop_index("ix_application_pricing_lookup", table_name="application_pricing")
    op.drop_table("application_pricing")
    op.drop_index("uq_user_application_grants_active", table_name="user_application_grants")
    op.drop_index("ix_user_application_grants_tenant_app", table_name="user_application_grants")
    op.drop_index("ix_user_application_grants_user_id", table_name="user_application_grants")
    op.drop_table("user_application_grants")
    op.drop_index("ix_tenant_application_licenses_application_id", table_name="tenant_application_licenses")
    op.drop_index("ix_tenant_application_licenses_tenant_id", table_name="tenant_application_licenses")
    op.drop_table("tenant_application_licenses")
    op.drop_index("ix_applications_slug", table_name="applications")
    op.drop_table("applications")
    op.drop_index("ix_users_tenant_id", table_name="users")
    op.drop_table("users")
    op.drop_table("user_types")
    op.drop_table("tenants")
