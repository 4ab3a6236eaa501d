from __future__ import annotations

from typing import Any


class TenantGateError(Exception):
    """Base error for tenantgate."""


class DatabaseError(TenantGateError):
    """Database layer failure."""


class AccessError(TenantGateError):
    """Expected business-rule outcome with a stable code and HTTP status."""

    code = "ACCESS_ERROR"
    status_code = 403
    default_message = "Access denied"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        self.headers = headers
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        # Match the {"code", "message", ...} payload used for HTTPException details.
        return {"code": self.code, "message": self.message, **self.details}


class TokenError(AccessError):
    """Bearer token could not be turned into a principal."""

    code = "TOKEN_INVALID"
    status_code = 401
    default_message = "Invalid token"


class TokenExpired(TokenError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class TokenInvalid(TokenError):
    code = "TOKEN_INVALID"
    default_message = "Invalid token"


class AccountInactive(TokenError):
    code = "ACCOUNT_INACTIVE"
    default_message = "User account is inactive"


class Unauthenticated(AccessError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required"


class TenantContextMissing(AccessError):
    code = "TENANT_CONTEXT_MISSING"
    status_code = 400
    default_message = "Tenant context could not be resolved"


class TenantMismatch(AccessError):
    code = "TENANT_MISMATCH"
    status_code = 403
    default_message = "Token does not belong to the requested tenant"


class ApplicationNotFound(AccessError):
    code = "APPLICATION_NOT_FOUND"
    status_code = 404
    default_message = "Application not found"


class NoTenantLicense(AccessError):
    code = "NO_TENANT_LICENSE"
    status_code = 403
    default_message = "Tenant has no active license for this application"


class SeatLimitExceeded(AccessError):
    code = "SEAT_LIMIT_EXCEEDED"
    status_code = 403
    default_message = "Seat limit reached for this application"


class NoUserAccess(AccessError):
    code = "NO_USER_ACCESS"
    status_code = 403
    default_message = "User has no access to this application"


class InsufficientRole(AccessError):
    code = "INSUFFICIENT_ROLE"
    status_code = 403
    default_message = "Role is not sufficient for this operation"


class PricingNotConfigured(AccessError):
    code = "PRICING_NOT_CONFIGURED"
    status_code = 422
    default_message = "No pricing configured for this application and user type"


class GrantNotFound(AccessError):
    code = "GRANT_NOT_FOUND"
    status_code = 404
    default_message = "Access grant not found"


class DuplicateGrant(AccessError):
    code = "DUPLICATE_GRANT"
    status_code = 409
    default_message = "User already has active access to this application"


class InvalidPrice(AccessError):
    code = "INVALID_PRICE"
    status_code = 422
    default_message = "Invalid price"


class PricingWindowOverlap(AccessError):
    code = "PRICING_WINDOW_OVERLAP"
    status_code = 409
    default_message = "Pricing window overlaps an existing entry"


class InvalidRole(AccessError):
    code = "INVALID_ROLE"
    status_code = 422
    default_message = "Unsupported role"


class UserNotFound(AccessError):
    code = "USER_NOT_FOUND"
    status_code = 422
    default_message = "User not found in tenant"


class LicenseNotFound(AccessError):
    code = "LICENSE_NOT_FOUND"
    status_code = 404
    default_message = "License not found"


class DuplicateLicense(AccessError):
    code = "DUPLICATE_LICENSE"
    status_code = 409
    default_message = "License is already active"


class InvalidSeatCapacity(AccessError):
    code = "INVALID_SEAT_CAPACITY"
    status_code = 422
    default_message = "Invalid seat capacity"


class RateLimited(AccessError):
    code = "RATE_LIMITED"
    status_code = 429
    default_message = "Too many requests"
