"""
Typed failures surfaced by the authorization and entitlement core.

Every failure carries an HTTP status and a stable machine-readable code; the
app factory renders them as JSON. Keep Unauthenticated, Forbidden and
ServiceUnavailable distinct: an upstream outage must never look like "not
logged in" or "access denied".
"""
from __future__ import annotations

from typing import Any


class EngineError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal error."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(EngineError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request."

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors), errors=errors)
        self.errors = errors


class Unauthenticated(EngineError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Authentication required."


class Forbidden(EngineError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied."


class NotSuperAdmin(Forbidden):
    code = "not_super_admin"
    default_message = "Super admin role required."


class CannotRevokeSelf(Forbidden):
    code = "cannot_revoke_self"
    default_message = "Admins cannot revoke their own access."


class TargetIsSuperAdmin(Forbidden):
    code = "target_is_super_admin"
    default_message = "Super admin access cannot be revoked."


class FeatureUnavailable(Forbidden):
    code = "feature_unavailable"
    default_message = "This feature is not available on your plan."


class RedemptionNotAllowed(Forbidden):
    """The code itself is valid but the principal's subscription cannot take it; `reason` says why."""

    code = "redemption_not_allowed"
    default_message = "Promo code cannot be redeemed on the current subscription."


class NotFound(EngineError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class TargetNotFound(NotFound):
    code = "target_not_found"
    default_message = "Target principal not found."


class RecordNotFound(NotFound):
    code = "record_not_found"
    default_message = "Subscription record not found."


class QuotaExceeded(EngineError):
    status_code = 429
    code = "quota_exceeded"
    default_message = "Usage limit reached for this period."


class CodeInvalid(EngineError):
    """Umbrella for promo-code validation failures; `reason` says which check failed."""

    status_code = 422
    code = "code_invalid"
    reason = "code_invalid"
    default_message = "Promo code is not valid."

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        super().__init__(message, reason=self.reason, **extra)


class CodeNotFound(CodeInvalid):
    reason = "code_not_found"
    default_message = "Promo code not found."


class CodeInactive(CodeInvalid):
    reason = "code_inactive"
    default_message = "Promo code is no longer active."


class CodeExpired(CodeInvalid):
    reason = "code_expired"
    default_message = "Promo code is outside its validity window."


class CodeExhausted(CodeInvalid):
    reason = "code_exhausted"
    default_message = "Promo code has reached its maximum number of uses."


class TierNotApplicable(CodeInvalid):
    reason = "tier_not_applicable"
    default_message = "Promo code does not apply to this plan."


class Conflict(EngineError):
    status_code = 409
    code = "conflict"
    default_message = "Conflicting update."


class StaleEvent(Conflict):
    code = "stale_event"
    default_message = "Event is older than the last applied event."


class InvalidTransition(Conflict):
    code = "invalid_transition"
    default_message = "Subscription status transition not allowed."


class UnknownEventType(EngineError):
    status_code = 400
    code = "unknown_event_type"
    default_message = "Unknown webhook event type."


class ServiceUnavailable(EngineError):
    status_code = 503
    code = "service_unavailable"
    default_message = "An upstream service is unavailable. Please retry."
