from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tenantgate.core.clock import utc_now


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")

LICENSE_ACTIVE = "active"
LICENSE_EXPIRED = "expired"
LICENSE_SUSPENDED = "suspended"

DECISION_GRANTED = "granted"
DECISION_DENIED = "denied"


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Suspended tenants keep their data but cannot resolve as request context.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UserType(Base):
    __tablename__ = "user_types"

    # Pricing is keyed by user type, e.g. physician vs. front-desk staff.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Platform staff may exist without a tenant.
    tenant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("tenants.id"), index=True, nullable=True
    )
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    # Tenant role: operations, manager or admin.
    role: Mapped[str] = mapped_column(String)
    # Platform-wide role such as internal_admin; null for tenant users.
    platform_role: Mapped[str | None] = mapped_column(String, nullable=True)
    user_type_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("user_types.id"), nullable=True
    )
    # Deactivate instead of deleting so grants and logs keep their actor.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Routes reference applications by slug, e.g. "tq" or "transcribe".
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantApplicationLicense(Base):
    __tablename__ = "tenant_application_licenses"
    __table_args__ = (
        UniqueConstraint("tenant_id", "application_id", name="uq_tenant_application_license"),
        CheckConstraint("seats_used >= 0", name="ck_license_seats_used_nonnegative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    application_id: Mapped[str] = mapped_column(String, ForeignKey("applications.id"), index=True)
    # active, expired or suspended; rows are never deleted.
    status: Mapped[str] = mapped_column(String, default=LICENSE_ACTIVE)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Null expiry means the license never expires.
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Null capacity means unlimited seats.
    seat_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Only changed through conditional UPDATE statements.
    seats_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )


class UserApplicationGrant(Base):
    __tablename__ = "user_application_grants"
    __table_args__ = (
        # At most one active grant per (user, tenant, application); history rows stay.
        Index(
            "uq_user_application_grants_active",
            "user_id",
            "tenant_id",
            "application_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_user_application_grants_tenant_app", "tenant_id", "application_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"))
    application_id: Mapped[str] = mapped_column(String, ForeignKey("applications.id"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role_in_app: Mapped[str] = mapped_column(String)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Pricing frozen at grant time; later price changes never touch these columns.
    price_snapshot: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency_snapshot: Mapped[str] = mapped_column(String(3))
    billing_cycle_snapshot: Mapped[str] = mapped_column(String)
    user_type_id_snapshot: Mapped[str | None] = mapped_column(String, nullable=True)
    pricing_id_snapshot: Mapped[str | None] = mapped_column(String, nullable=True)


class ApplicationPricing(Base):
    __tablename__ = "application_pricing"
    __table_args__ = (
        Index("ix_application_pricing_lookup", "application_id", "user_type_id", "valid_from"),
        CheckConstraint("price >= 0", name="ck_application_pricing_price_nonnegative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    application_id: Mapped[str] = mapped_column(String, ForeignKey("applications.id"))
    user_type_id: Mapped[str] = mapped_column(String, ForeignKey("user_types.id"))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    billing_cycle: Mapped[str] = mapped_column(String)
    # Half-open window [valid_from, valid_to); null valid_to is open-ended.
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class AccessDecisionLog(Base):
    __tablename__ = "access_decision_logs"
    __table_args__ = (
        Index("ix_access_decision_logs_tenant_occurred", "tenant_id", "occurred_at"),
    )

    # Append-only; ordered by a monotonic id for pagination.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    # Null actor and tenant capture unauthenticated or context-less attempts.
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null when the application slug did not resolve.
    application_id: Mapped[str | None] = mapped_column(String, nullable=True)
    application_slug: Mapped[str | None] = mapped_column(String, nullable=True)
    decision: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str | None] = mapped_column(String, nullable=True)
    access_source: Mapped[str | None] = mapped_column(String, nullable=True)
    api_path: Mapped[str | None] = mapped_column(String, nullable=True)
    http_method: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Administrative actions (grants, license and pricing changes) land here.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
