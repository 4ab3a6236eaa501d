from __future__ import annotations

# Re-export access services for centralized imports.

from tenantgate.services.access.access_log import AccessLogSink, get_access_log_sink, set_access_log_sink
from tenantgate.services.access.roles import role_satisfies
from tenantgate.services.access.licenses import SeatInfo, check_license, check_seat_availability
from tenantgate.services.access.pricing import PricingEntry, get_current_price, schedule_price
from tenantgate.services.access.grants import GrantOutcome, GrantRequest, grant_access, has_access, revoke_access
from tenantgate.services.access.decision import (
    AccessContext,
    AccessRequest,
    AccessSource,
    AuthorizationEngine,
    get_authorization_engine,
)

__all__ = [
    "AccessLogSink",
    "get_access_log_sink",
    "set_access_log_sink",
    "role_satisfies",
    "SeatInfo",
    "check_license",
    "check_seat_availability",
    "PricingEntry",
    "get_current_price",
    "schedule_price",
    "GrantOutcome",
    "GrantRequest",
    "grant_access",
    "has_access",
    "revoke_access",
    "AccessContext",
    "AccessRequest",
    "AccessSource",
    "AuthorizationEngine",
    "get_authorization_engine",
]
