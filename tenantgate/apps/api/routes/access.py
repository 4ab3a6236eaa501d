from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.apps.api.deps import authorize_request, get_db


router = APIRouter(prefix="/apps", tags=["access"])


@router.get("/{slug}/access")
async def check_application_access(
    slug: str,
    request: Request,
    required_role: str | None = Query(default=None, max_length=64),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Lets front-ends ask "may I open this application?" without calling a feature route.
    context = await authorize_request(
        request,
        db,
        application_slug=slug,
        required_role=required_role,
    )
    return context.as_dict()
