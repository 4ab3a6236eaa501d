from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import utc_now
from tenantgate.domain.models import DECISION_DENIED, DECISION_GRANTED, AccessDecisionLog
from tenantgate.persistence.db import SessionLocal
from tenantgate.services.audit import RequestMeta, sanitize_metadata


logger = logging.getLogger(__name__)


class AccessLogSink:
    """Append-only writer for access decisions.

    Entries are written on a dedicated session so a rollback of the request's
    own transaction never drops them. Both paths are best-effort: a failed
    write is logged and reported through the return value, and the decision
    that triggered it stands.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], AsyncSession] | None = None,
        time_provider: Callable[[], Any] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._time_provider = time_provider or utc_now

    async def log_granted(
        self,
        *,
        user_id: str | None,
        tenant_id: str | None,
        application_id: str | None,
        application_slug: str | None,
        access_source: str | None,
        request_meta: RequestMeta | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        return await self._write(
            decision=DECISION_GRANTED,
            reason_code=None,
            user_id=user_id,
            tenant_id=tenant_id,
            application_id=application_id,
            application_slug=application_slug,
            access_source=access_source,
            request_meta=request_meta,
            metadata=metadata,
        )

    async def log_denied(
        self,
        *,
        user_id: str | None,
        tenant_id: str | None,
        application_id: str | None,
        application_slug: str | None,
        reason_code: str,
        request_meta: RequestMeta | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        return await self._write(
            decision=DECISION_DENIED,
            reason_code=reason_code,
            user_id=user_id,
            tenant_id=tenant_id,
            application_id=application_id,
            application_slug=application_slug,
            access_source=None,
            request_meta=request_meta,
            metadata=metadata,
        )

    async def _write(
        self,
        *,
        decision: str,
        reason_code: str | None,
        user_id: str | None,
        tenant_id: str | None,
        application_id: str | None,
        application_slug: str | None,
        access_source: str | None,
        request_meta: RequestMeta | None,
        metadata: dict[str, Any] | None,
    ) -> bool:
        meta = request_meta or RequestMeta()
        entry = AccessDecisionLog(
            occurred_at=self._time_provider(),
            user_id=user_id,
            tenant_id=tenant_id,
            application_id=application_id,
            application_slug=application_slug,
            decision=decision,
            reason_code=reason_code,
            access_source=access_source,
            api_path=meta.path,
            http_method=meta.method,
            request_id=meta.request_id,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
            metadata_json=sanitize_metadata(metadata or {}),
        )
        try:
            async with self._session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "access_log_write_failed decision=%s reason=%s tenant_id=%s request_id=%s",
                decision,
                reason_code,
                tenant_id,
                meta.request_id,
                exc_info=exc,
            )
            return False
        return True


_sink: AccessLogSink | None = None


def get_access_log_sink() -> AccessLogSink:
    global _sink
    if _sink is None:
        _sink = AccessLogSink()
    return _sink


def set_access_log_sink(sink: AccessLogSink | None) -> None:
    # Swap the process-wide sink; tests use this to inject failing writers.
    global _sink
    _sink = sink
