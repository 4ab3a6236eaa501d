from __future__ import annotations

from typing import Iterable, Sequence

from tenantgate.core.config import get_settings
from tenantgate.core.errors import InvalidRole


def normalize_role(role: str, *, allowed: Iterable[str]) -> str:
    # Keep a stable, lowercased role vocabulary across tokens, grants and checks.
    normalized = role.strip().lower()
    if normalized not in set(allowed):
        raise InvalidRole(f"Unsupported role: {role}", details={"role": role})
    return normalized


def normalize_application_role(role: str) -> str:
    return normalize_role(role, allowed=get_settings().application_roles)


def normalize_tenant_role(role: str) -> str:
    return normalize_role(role, allowed=get_settings().tenant_roles)


def equivalent_roles(role: str, classes: Sequence[Sequence[str]]) -> frozenset[str]:
    # Roles outside every class only match themselves.
    for members in classes:
        if role in members:
            return frozenset(members)
    return frozenset({role})


def role_satisfies(
    *,
    effective_role: str | None,
    required_role: str,
    classes: Sequence[Sequence[str]] | None = None,
) -> bool:
    if not effective_role:
        return False
    resolved = classes if classes is not None else get_settings().role_equivalence_classes
    return effective_role.strip().lower() in equivalent_roles(required_role.strip().lower(), resolved)
