from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Select, select

from tenantgate.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a tenant-scoped query is built without a tenant id.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Licenses, grants and decision logs all carry tenant_id; filter through one helper.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id


def tenant_select(model, tenant_id: str) -> Select:
    return select(model).where(tenant_predicate(model, tenant_id))
