from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tenantgate.core.clock import as_utc, utc_now
from tenantgate.core.errors import (
    AccessError,
    ApplicationNotFound,
    InsufficientRole,
    NoTenantLicense,
    NoUserAccess,
    SeatLimitExceeded,
    TenantContextMissing,
    TenantMismatch,
    Unauthenticated,
)
from tenantgate.domain.models import Application, TenantApplicationLicense, UserApplicationGrant
from tenantgate.persistence.repos.directory import get_active_tenant, get_application_by_slug
from tenantgate.services.access import grants, licenses
from tenantgate.services.access.access_log import AccessLogSink, get_access_log_sink
from tenantgate.services.access.licenses import SeatInfo
from tenantgate.services.access.roles import role_satisfies
from tenantgate.services.audit import RequestMeta
from tenantgate.services.auth.tokens import Principal


logger = logging.getLogger(__name__)

INTERNAL_ERROR_REASON = "INTERNAL_ERROR"


class AccessSource(str, Enum):
    # Where the user-level access decision came from.
    TOKEN = "token"
    DATABASE = "database"


@dataclass(frozen=True)
class AccessRequest:
    principal: Principal | None
    # Tenant named by the request; falls back to the principal's tenant.
    tenant_id: str | None
    application_slug: str
    required_role: str | None = None
    request_meta: RequestMeta = field(default_factory=RequestMeta)


@dataclass(frozen=True)
class LicenseSnapshot:
    id: str
    status: str
    activated_at: datetime | None
    expires_at: datetime | None
    seat_capacity: int | None
    seats_used: int


@dataclass(frozen=True)
class AccessContext:
    # Attached to the request on success for downstream handlers.
    user_id: str
    tenant_id: str
    application_id: str
    application_slug: str
    application_name: str
    role_in_app: str
    license: LicenseSnapshot
    seats: SeatInfo | None
    access_source: AccessSource

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "application_id": self.application_id,
            "application_slug": self.application_slug,
            "application_name": self.application_name,
            "role_in_app": self.role_in_app,
            "access_source": self.access_source.value,
            "license": {
                "id": self.license.id,
                "status": self.license.status,
                "activated_at": self.license.activated_at.isoformat() if self.license.activated_at else None,
                "expires_at": self.license.expires_at.isoformat() if self.license.expires_at else None,
                "seat_capacity": self.license.seat_capacity,
                "seats_used": self.license.seats_used,
            },
            "seats": (
                {
                    "capacity": self.seats.capacity,
                    "used": self.seats.used,
                    "available": self.seats.available,
                }
                if self.seats is not None
                else None
            ),
        }


class StepOrderError(RuntimeError):
    """A step ran before the step that resolves its input."""


def _resolved(value, name: str):
    if value is None:
        raise StepOrderError(f"Decision state has no {name}; check the step order")
    return value


@dataclass(frozen=True)
class DecisionState:
    request: AccessRequest
    now: datetime
    principal: Principal | None = None
    tenant_id: str | None = None
    application: Application | None = None
    license: TenantApplicationLicense | None = None
    grant: UserApplicationGrant | None = None
    access_source: AccessSource | None = None

    def require_principal(self) -> Principal:
        return _resolved(self.principal, "principal")

    def require_tenant_id(self) -> str:
        return _resolved(self.tenant_id, "tenant")

    def require_application(self) -> Application:
        return _resolved(self.application, "application")

    def require_license(self) -> TenantApplicationLicense:
        return _resolved(self.license, "license")

    def require_access_source(self) -> AccessSource:
        return _resolved(self.access_source, "access source")


@dataclass(frozen=True)
class Halt:
    error: AccessError


Step = Callable[[AsyncSession, DecisionState], Awaitable["DecisionState | Halt"]]


async def authenticate(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    if state.request.principal is None:
        return Halt(Unauthenticated())
    return replace(state, principal=state.request.principal)


async def resolve_tenant(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    principal = state.require_principal()
    tenant_id = state.request.tenant_id or principal.tenant_id
    if not tenant_id:
        return Halt(TenantContextMissing())
    if tenant_id != principal.tenant_id and not principal.is_platform_admin():
        return Halt(TenantMismatch(details={"tenant_id": tenant_id}))
    if await get_active_tenant(session, tenant_id) is None:
        return Halt(TenantContextMissing(f"Tenant '{tenant_id}' is not active", details={"tenant_id": tenant_id}))
    return replace(state, tenant_id=tenant_id)


async def resolve_application(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    slug = state.request.application_slug
    application = await get_application_by_slug(session, slug)
    if application is None:
        return Halt(ApplicationNotFound(f"Application '{slug}' not found", details={"application_slug": slug}))
    return replace(state, application=application)


async def check_tenant_license(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    application = state.require_application()
    license_row = await licenses.get_usable_license(
        session,
        tenant_id=state.require_tenant_id(),
        application_id=application.id,
        now=state.now,
    )
    if license_row is None:
        return Halt(
            NoTenantLicense(
                f"Tenant has no active license for '{application.slug}'",
                details={"application_slug": application.slug},
            )
        )
    return replace(state, license=license_row)


async def check_seats(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    # A full license only blocks users who do not already hold a seat.
    seats = licenses.seat_info(state.require_license())
    if seats is None or seats.available >= 1:
        return state
    grant = await grants.has_access(
        session,
        user_id=state.require_principal().user_id,
        tenant_id=state.require_tenant_id(),
        application_slug=state.request.application_slug,
        now=state.now,
    )
    if grant is None:
        return Halt(
            SeatLimitExceeded(
                f"Seat limit reached: using {seats.used}/{seats.capacity} seats",
                details={"seat_capacity": seats.capacity, "seats_used": seats.used},
            )
        )
    return replace(state, grant=grant)


async def check_user_access(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    principal = state.require_principal()
    tenant_id = state.require_tenant_id()
    slug = state.request.application_slug
    # Token fast path; the license step above still applies tenant-level revocation.
    if slug in principal.allowed_apps and tenant_id == principal.tenant_id:
        return replace(state, access_source=AccessSource.TOKEN)
    grant = state.grant or await grants.has_access(
        session,
        user_id=principal.user_id,
        tenant_id=tenant_id,
        application_slug=slug,
        now=state.now,
    )
    if grant is None:
        return Halt(NoUserAccess(f"User has no access to '{slug}'", details={"application_slug": slug}))
    return replace(state, grant=grant, access_source=AccessSource.DATABASE)


async def check_role(session: AsyncSession, state: DecisionState) -> DecisionState | Halt:
    required_role = state.request.required_role
    if not required_role:
        return state
    principal = state.require_principal()
    grant = state.grant
    if grant is None:
        # Token path skipped the grant lookup; role checks need the in-app role.
        grant = await grants.has_access(
            session,
            user_id=principal.user_id,
            tenant_id=state.require_tenant_id(),
            application_slug=state.request.application_slug,
            now=state.now,
        )
    effective_role = grant.role_in_app if grant is not None else principal.role
    if not role_satisfies(effective_role=effective_role, required_role=required_role):
        return Halt(
            InsufficientRole(
                f"Role '{effective_role}' does not satisfy required role '{required_role}'",
                details={"required_role": required_role},
            )
        )
    return replace(state, grant=grant)


DEFAULT_STEPS: tuple[Step, ...] = (
    authenticate,
    resolve_tenant,
    resolve_application,
    check_tenant_license,
    check_seats,
    check_user_access,
    check_role,
)


class AuthorizationEngine:
    def __init__(
        self,
        *,
        sink: AccessLogSink | None = None,
        steps: Sequence[Step] | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._steps = tuple(steps) if steps is not None else DEFAULT_STEPS
        self._time_provider = time_provider or utc_now

    @property
    def sink(self) -> AccessLogSink:
        return self._sink or get_access_log_sink()

    async def evaluate(self, session: AsyncSession, access_request: AccessRequest) -> AccessContext:
        state = DecisionState(request=access_request, now=self._time_provider())
        try:
            for step in self._steps:
                outcome = await step(session, state)
                if isinstance(outcome, Halt):
                    await self.record_denial(access_request, outcome.error, state=state)
                    raise outcome.error
                state = outcome
            context = self._build_context(state)
        except AccessError:
            raise
        except Exception as exc:
            logger.error(
                "access_decision_failed application=%s tenant_id=%s",
                access_request.application_slug,
                state.tenant_id,
                exc_info=exc,
            )
            await self._log_denied_best_effort(access_request, INTERNAL_ERROR_REASON, state=state)
            raise

        await self._log_granted_best_effort(access_request, context)
        return context

    async def record_denial(
        self,
        access_request: AccessRequest,
        error: AccessError,
        *,
        state: DecisionState | None = None,
    ) -> None:
        # Also used by the HTTP layer for token failures that happen before evaluate().
        logger.info(
            "access_denied reason=%s application=%s user_id=%s",
            error.code,
            access_request.application_slug,
            access_request.principal.user_id if access_request.principal else None,
        )
        await self._log_denied_best_effort(access_request, error.code, state=state)

    async def _log_denied_best_effort(
        self,
        access_request: AccessRequest,
        reason_code: str,
        *,
        state: DecisionState | None,
    ) -> None:
        principal = access_request.principal
        metadata: dict[str, Any] = {}
        if access_request.required_role:
            metadata["required_role"] = access_request.required_role
        try:
            await self.sink.log_denied(
                user_id=principal.user_id if principal else None,
                tenant_id=(state.tenant_id if state else None)
                or access_request.tenant_id
                or (principal.tenant_id if principal else None),
                application_id=state.application.id if state and state.application else None,
                application_slug=access_request.application_slug,
                reason_code=reason_code,
                request_meta=access_request.request_meta,
                metadata=metadata,
            )
        except Exception as exc:
            # The sink already absorbs storage errors; anything else must not mask the decision.
            logger.warning("access_log_sink_failed reason=%s", reason_code, exc_info=exc)

    async def _log_granted_best_effort(self, access_request: AccessRequest, context: AccessContext) -> None:
        metadata: dict[str, Any] = {"role_in_app": context.role_in_app}
        if access_request.required_role:
            metadata["required_role"] = access_request.required_role
        try:
            await self.sink.log_granted(
                user_id=context.user_id,
                tenant_id=context.tenant_id,
                application_id=context.application_id,
                application_slug=context.application_slug,
                access_source=context.access_source.value,
                request_meta=access_request.request_meta,
                metadata=metadata,
            )
        except Exception as exc:
            logger.warning("access_log_sink_failed decision=granted", exc_info=exc)

    @staticmethod
    def _build_context(state: DecisionState) -> AccessContext:
        principal = state.require_principal()
        application = state.require_application()
        license_row = state.require_license()
        role_in_app = state.grant.role_in_app if state.grant is not None else principal.role
        return AccessContext(
            user_id=principal.user_id,
            tenant_id=state.require_tenant_id(),
            application_id=application.id,
            application_slug=application.slug,
            application_name=application.name,
            role_in_app=role_in_app,
            license=LicenseSnapshot(
                id=license_row.id,
                status=license_row.status,
                activated_at=as_utc(license_row.activated_at),
                expires_at=as_utc(license_row.expires_at),
                seat_capacity=license_row.seat_capacity,
                seats_used=license_row.seats_used,
            ),
            seats=licenses.seat_info(license_row),
            access_source=state.require_access_source(),
        )


_engine: AuthorizationEngine | None = None


def get_authorization_engine() -> AuthorizationEngine:
    global _engine
    if _engine is None:
        _engine = AuthorizationEngine()
    return _engine


def reset_authorization_engine() -> None:
    # Drop the cached engine so tests can rebuild it with fresh settings.
    global _engine
    _engine = None
