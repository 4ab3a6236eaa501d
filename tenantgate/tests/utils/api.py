from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from tenantgate.apps.api.main import create_app
from tenantgate.core.config import get_settings
from tenantgate.domain.models import AuditEvent
from tenantgate.persistence.db import SessionLocal


@asynccontextmanager
async def api_client(app: FastAPI | None = None, *, raise_app_exceptions: bool = True) -> AsyncIterator[AsyncClient]:
    # Fresh app per test so settings overrides from monkeypatch take effect.
    if app is None:
        get_settings.cache_clear()
        app = create_app()
    transport = ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def audit_events(*, tenant_id: str | None, event_type: str) -> list[AuditEvent]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditEvent)
            .where(AuditEvent.tenant_id == tenant_id, AuditEvent.event_type == event_type)
            .order_by(AuditEvent.id)
        )
        return list(result.scalars().all())
