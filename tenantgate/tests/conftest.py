from __future__ import annotations

import os
from pathlib import Path
import tempfile
from uuid import uuid4

# Default to a throwaway SQLite file so the suite runs without Postgres; set DATABASE_URL to override.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / f'tenantgate-test-{uuid4().hex}.db'}",
)
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import pytest

from tenantgate.apps.api import rate_limit
from tenantgate.core.config import get_settings
from tenantgate.domain.models import Base
from tenantgate.persistence.db import engine
from tenantgate.services.access.access_log import set_access_log_sink
from tenantgate.services.access.decision import reset_authorization_engine


@pytest.fixture(scope="session", autouse=True)
async def create_schema() -> None:
    # Build tables from metadata; existing tables (e.g. a migrated Postgres) are left alone.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Singletons (sink, engine, limiter, settings) must not leak between tests.
    yield
    set_access_log_sink(None)
    reset_authorization_engine()
    rate_limit.reset_rate_limiter_state()
    get_settings.cache_clear()
