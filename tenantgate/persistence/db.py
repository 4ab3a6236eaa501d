from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenantgate.core.config import get_settings


# Seat counters rely on the writer lock; SQLite callers wait for it instead of failing fast.
_SQLITE_BUSY_TIMEOUT_S = 30


def engine_options(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    options: dict[str, Any] = {"pool_pre_ping": True}
    if make_url(database_url).get_backend_name() == "sqlite":
        options["connect_args"] = {"timeout": _SQLITE_BUSY_TIMEOUT_S}
        return options
    # Bounded asyncpg pool; the statement timeout caps a stuck seat UPDATE.
    options["pool_size"] = max(1, int(settings.api_db_pool_size))
    options["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    options["pool_timeout"] = 30
    options["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


_database_url = get_settings().database_url
engine = create_async_engine(_database_url, **engine_options(_database_url))
# Grants and licenses are read after commit for responses, so keep loaded state.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
