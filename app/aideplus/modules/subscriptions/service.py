"""
Subscription lifecycle: the tier/status state machine for a principal's
subscription record, driven by payment-provider events and administrative grants.

effective_tier() is the single source of truth for entitlement. Callers never
inspect `status` directly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from app.aideplus.audit import record_event
from app.aideplus.constants import (
    DISCOUNT_PERCENTAGE,
    ENTITLED_STATUSES,
    GRANT_MAX_MONTHS,
    GRANT_MIN_MONTHS,
    PAID_TIERS,
    PROMO_GRANT_MONTHS,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    STATUS_REVOKED,
    STATUS_TRANSITIONS,
    STATUS_TRIALING,
    STATUSES,
    TIER_FREE,
    TIER_RANK,
)
from app.aideplus.db import insert_ignore_conflicts
from app.aideplus.errors import (
    InvalidTransition,
    NotSuperAdmin,
    RecordNotFound,
    RedemptionNotAllowed,
    StaleEvent,
    TargetNotFound,
    UnknownEventType,
)
from app.aideplus.rbac import is_super_admin
from app.aideplus.utils import add_months, isoformat, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.aideplus.auth import Principal
    from app.aideplus.modules.admins.models import AdminRecord
    from app.aideplus.modules.promo_codes.models import PromoCode
    from app.aideplus.modules.subscriptions.models import SubscriptionRecord
    from app.aideplus.modules.subscriptions.payments import PaymentProvider

logger = logging.getLogger(__name__)

# Provider-neutral event types produced by the webhook mappers
EVENT_SUBSCRIPTION_UPSERTED = "subscription.upserted"
EVENT_SUBSCRIPTION_DELETED = "subscription.deleted"
EVENT_PAYMENT_FAILED = "payment.failed"
EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
EVENT_CHECKOUT_COMPLETED = "checkout.completed"

EVENT_TYPES = frozenset(
    {
        EVENT_SUBSCRIPTION_UPSERTED,
        EVENT_SUBSCRIPTION_DELETED,
        EVENT_PAYMENT_FAILED,
        EVENT_PAYMENT_SUCCEEDED,
        EVENT_CHECKOUT_COMPLETED,
    }
)

OUTCOME_APPLIED = "applied"
OUTCOME_STALE = "stale"
OUTCOME_IGNORED = "ignored"
OUTCOME_DUPLICATE = "duplicate"


@dataclass(frozen=True)
class SubscriptionEvent:
    event_type: str
    sequence: int
    subscription_ref: str | None = None
    event_id: str | None = None
    customer_ref: str | None = None
    principal_id: str | None = None
    status: str | None = None
    tier: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    cancel_at_period_end: bool | None = None


@dataclass(frozen=True)
class WebhookOutcome:
    outcome: str
    record: "SubscriptionRecord | None" = None


@dataclass(frozen=True)
class SubscriptionGrant:
    """Result of applying a promo code: either a complimentary period or a discount owed at checkout."""

    tier: str
    granted: bool
    discount_type: str
    discount_value: Decimal
    record: "SubscriptionRecord | None" = None

    def to_dict(self) -> dict:
        return {
            "tier": self.tier,
            "granted": self.granted,
            "discount_type": self.discount_type,
            "discount_value": float(self.discount_value),
            "current_period_end": isoformat(self.record.current_period_end) if self.record else None,
        }


def effective_tier(record: "SubscriptionRecord | None", now: datetime | None = None) -> str:
    if record is None:
        return TIER_FREE
    now = now or utcnow()
    if record.status in ENTITLED_STATUSES and record.current_period_end > now:
        return record.tier
    return TIER_FREE


def _transition(record: "SubscriptionRecord | None", new_status: str) -> None:
    current = record.status if record is not None else None
    if new_status not in STATUSES or new_status not in STATUS_TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot move subscription from {current or 'none'} to {new_status}.")
    if record is not None:
        record.status = new_status


def _roll_over(record: "SubscriptionRecord", now: datetime) -> bool:
    """Lazy period-end processing: a deferred cancellation takes effect once the period is over."""
    if (
        record.cancel_at_period_end
        and record.status in ENTITLED_STATUSES
        and record.current_period_end <= now
    ):
        _transition(record, STATUS_CANCELLED)
        record.cancelled_at = record.current_period_end
        record.updated_at = now
        logger.info("Deferred cancellation applied principal_id=%s period_end=%s", record.principal_id, record.current_period_end)
        return True
    return False


def get_subscription(s: "Session", principal_id: str, now: datetime | None = None) -> "SubscriptionRecord | None":
    from app.aideplus.modules.subscriptions.models import SubscriptionRecord

    record = s.query(SubscriptionRecord).filter(SubscriptionRecord.principal_id == principal_id).one_or_none()
    if record is not None and _roll_over(record, now or utcnow()):
        s.flush()
    return record


def effective_tier_for(s: "Session", principal_id: str, now: datetime | None = None) -> str:
    now = now or utcnow()
    return effective_tier(get_subscription(s, principal_id, now), now)


def list_subscriptions(s: "Session", *, status: str | None = None, tier: str | None = None) -> list["SubscriptionRecord"]:
    from app.aideplus.modules.subscriptions.models import SubscriptionRecord

    q = s.query(SubscriptionRecord)
    if status:
        q = q.filter(SubscriptionRecord.status == status)
    if tier:
        q = q.filter(SubscriptionRecord.tier == tier)
    return q.order_by(SubscriptionRecord.created_at.desc(), SubscriptionRecord.id.desc()).all()


def _snapshot(record: "SubscriptionRecord | None") -> dict | None:
    if record is None:
        return None
    return {
        "tier": record.tier,
        "status": record.status,
        "current_period_start": isoformat(record.current_period_start),
        "current_period_end": isoformat(record.current_period_end),
        "cancel_at_period_end": record.cancel_at_period_end,
        "is_complimentary": record.is_complimentary,
        "payment_subscription_ref": record.payment_subscription_ref,
    }


# ---------------------------------------------------------------------------
# Payment-provider events
# ---------------------------------------------------------------------------


def _check_sequence(record: "SubscriptionRecord", event: SubscriptionEvent) -> None:
    """
    Sequences come from timestamps with one-second resolution, so several distinct
    events can share one. Only a strictly older sequence is stale; an equal one is
    stale only when the event carries no id to tell it apart from a redelivery.
    """
    last = record.last_event_sequence
    if last is None:
        return
    if event.sequence < last or (event.sequence == last and not event.event_id):
        raise StaleEvent(f"Event sequence {event.sequence} is behind last applied {last}.")


def _claim_event_id(s: "Session", event: SubscriptionEvent, now: datetime) -> bool:
    """Record the event id in the processed ledger. False when it was already there."""
    from app.aideplus.modules.subscriptions.models import ProcessedWebhookEvent

    if not event.event_id:
        return True
    result = s.execute(
        insert_ignore_conflicts(
            s,
            ProcessedWebhookEvent.__table__,
            {
                "event_id": event.event_id,
                "event_type": event.event_type,
                "subscription_ref": event.subscription_ref,
                "sequence": event.sequence,
                "received_at": now,
            },
            ["event_id"],
        )
    )
    return result.rowcount != 0


def _find_event_record(s: "Session", event: SubscriptionEvent) -> "SubscriptionRecord | None":
    from app.aideplus.modules.subscriptions.models import SubscriptionRecord

    record = None
    if event.subscription_ref:
        record = (
            s.query(SubscriptionRecord)
            .filter(SubscriptionRecord.payment_subscription_ref == event.subscription_ref)
            .one_or_none()
        )
    if record is None and event.principal_id and event.event_type == EVENT_SUBSCRIPTION_UPSERTED:
        record = s.query(SubscriptionRecord).filter(SubscriptionRecord.principal_id == event.principal_id).one_or_none()
    return record


def apply_webhook_event(s: "Session", event: SubscriptionEvent, now: datetime | None = None) -> WebhookOutcome:
    """
    Apply a payment-provider event. Delivery is at-least-once and may be out of
    order: a redelivered event id, or an event whose sequence is older than the
    record's last applied sequence, is a logged no-op.
    """
    from app.aideplus.modules.subscriptions.models import SubscriptionRecord

    now = now or utcnow()
    if event.event_type not in EVENT_TYPES:
        raise UnknownEventType(f"Unknown event type: {event.event_type}")
    if not _claim_event_id(s, event, now):
        logger.info("Ignoring redelivered webhook event id=%s type=%s", event.event_id, event.event_type)
        return WebhookOutcome(OUTCOME_DUPLICATE)
    if event.event_type == EVENT_CHECKOUT_COMPLETED:
        # the subscription itself arrives through subscription events
        logger.info("Checkout completed principal_id=%s ref=%s", event.principal_id, event.subscription_ref)
        return WebhookOutcome(OUTCOME_IGNORED)

    record = _find_event_record(s, event)
    if record is not None:
        try:
            _check_sequence(record, event)
        except StaleEvent as e:
            logger.info(
                "Ignoring stale webhook event id=%s type=%s ref=%s: %s",
                event.event_id,
                event.event_type,
                event.subscription_ref,
                e.message,
            )
            return WebhookOutcome(OUTCOME_STALE, record)
        if record.status == STATUS_REVOKED:
            # only an administrative grant lifts a revocation
            logger.warning(
                "Ignoring webhook for revoked subscription id=%s type=%s principal_id=%s",
                event.event_id,
                event.event_type,
                record.principal_id,
            )
            record.last_event_sequence = event.sequence
            s.flush()
            return WebhookOutcome(OUTCOME_IGNORED, record)
    before = _snapshot(record)

    if event.event_type == EVENT_SUBSCRIPTION_UPSERTED:
        if event.tier not in PAID_TIERS or event.status is None:
            raise UnknownEventType(f"Subscription event without a recognised tier/status (tier={event.tier}).")
        if event.period_start is None or event.period_end is None:
            raise UnknownEventType("Subscription event without period bounds.")
        if record is None:
            if not event.principal_id:
                raise RecordNotFound(f"No subscription record for {event.subscription_ref} and no principal reference.")
            _transition(None, event.status)
            record = SubscriptionRecord(principal_id=event.principal_id, status=event.status, created_at=now)
            s.add(record)
        else:
            if event.sequence == record.last_event_sequence and event.status not in STATUS_TRANSITIONS[record.status]:
                # same-second sibling that arrived after the later state
                logger.info(
                    "Ignoring same-sequence webhook event id=%s status=%s behind status=%s",
                    event.event_id,
                    event.status,
                    record.status,
                )
                return WebhookOutcome(OUTCOME_STALE, record)
            _transition(record, event.status)
        record.tier = event.tier
        record.current_period_start = event.period_start
        record.current_period_end = event.period_end
        record.cancel_at_period_end = bool(event.cancel_at_period_end)
        record.is_complimentary = False
        record.payment_subscription_ref = event.subscription_ref
        record.payment_customer_ref = event.customer_ref or record.payment_customer_ref
        if record.status == STATUS_CANCELLED and record.cancelled_at is None:
            record.cancelled_at = now
    else:
        if record is None:
            raise RecordNotFound(f"No subscription record for {event.subscription_ref}.")
        if event.event_type == EVENT_SUBSCRIPTION_DELETED:
            _transition(record, STATUS_CANCELLED)
            record.cancelled_at = now
        elif event.event_type == EVENT_PAYMENT_FAILED:
            if record.status in (STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE):
                _transition(record, STATUS_PAST_DUE)
        elif event.event_type == EVENT_PAYMENT_SUCCEEDED:
            # a trial start comes with a zero-amount paid invoice; trialing stays trialing
            if record.status in (STATUS_PAST_DUE, STATUS_INCOMPLETE):
                _transition(record, STATUS_ACTIVE)
            if event.period_start and event.period_end and event.period_end > event.period_start:
                record.current_period_start = event.period_start
                record.current_period_end = event.period_end

    record.last_event_sequence = event.sequence
    record.updated_at = now
    s.flush()

    record_event(
        s,
        actor=None,
        action=f"subscription.webhook.{event.event_type}",
        entity_type="SubscriptionRecord",
        entity_id=str(record.id),
        metadata={
            "event_id": event.event_id,
            "sequence": event.sequence,
            "principal_id": record.principal_id,
            "before": before,
            "after": _snapshot(record),
        },
    )
    logger.info(
        "Webhook applied type=%s principal_id=%s status=%s tier=%s",
        event.event_type,
        record.principal_id,
        record.status,
        record.tier,
    )
    return WebhookOutcome(OUTCOME_APPLIED, record)


# ---------------------------------------------------------------------------
# Administrative grants
# ---------------------------------------------------------------------------


def validate_grant_payload(payload: dict) -> list[str]:
    """Validate a complimentary grant payload. Returns list of errors."""
    errors = []
    if not (payload.get("principal_id") or "").strip():
        errors.append("principal_id is required.")
    tier = (payload.get("tier") or "").strip()
    if tier not in PAID_TIERS:
        errors.append(f"Invalid tier. Must be one of: {', '.join(PAID_TIERS)}")
    months = payload.get("duration_months", 1)
    if isinstance(months, bool) or not isinstance(months, int) or not (GRANT_MIN_MONTHS <= months <= GRANT_MAX_MONTHS):
        errors.append(f"duration_months must be an integer between {GRANT_MIN_MONTHS} and {GRANT_MAX_MONTHS}.")
    reason = payload.get("reason")
    if reason is not None and (not isinstance(reason, str) or len(reason) > 500):
        errors.append("reason must be a string of at most 500 characters.")
    return errors


def _write_complimentary(
    s: "Session",
    principal_id: str,
    tier: str,
    months: int,
    now: datetime,
    *,
    granted_by: str | None,
    reason: str | None,
) -> tuple["SubscriptionRecord", dict | None]:
    from app.aideplus.modules.subscriptions.models import SubscriptionRecord

    record = s.query(SubscriptionRecord).filter(SubscriptionRecord.principal_id == principal_id).one_or_none()
    before = _snapshot(record)
    if record is None:
        record = SubscriptionRecord(principal_id=principal_id, created_at=now)
        s.add(record)
    elif record.payment_subscription_ref and record.status in ENTITLED_STATUSES:
        logger.warning(
            "Complimentary grant replaces a paid subscription principal_id=%s ref=%s",
            principal_id,
            record.payment_subscription_ref,
        )
    record.tier = tier
    record.status = STATUS_ACTIVE
    record.current_period_start = now
    record.current_period_end = add_months(now, months)
    record.cancel_at_period_end = False
    record.is_complimentary = True
    record.payment_subscription_ref = None
    record.cancelled_at = None
    record.grant_reason = reason
    record.granted_by_principal_id = granted_by
    record.updated_at = now
    s.flush()
    return record, before


def grant(
    s: "Session",
    acting_admin: "AdminRecord",
    actor: "Principal",
    target_principal_id: str,
    tier: str,
    duration_months: int = 1,
    reason: str | None = None,
    now: datetime | None = None,
) -> "SubscriptionRecord":
    """
    Create or overwrite a complimentary subscription. super_admin only, regardless
    of manage_subscriptions in the acting admin's permission map.
    """
    from app.aideplus.models import Profile

    if not is_super_admin(acting_admin):
        raise NotSuperAdmin("Only super admins can grant subscriptions.")
    if s.get(Profile, target_principal_id) is None:
        raise TargetNotFound()

    now = now or utcnow()
    record, before = _write_complimentary(
        s, target_principal_id, tier, duration_months, now, granted_by=actor.id, reason=reason
    )
    record_event(
        s,
        actor=actor,
        action="subscription.grant",
        entity_type="SubscriptionRecord",
        entity_id=str(record.id),
        reason=reason,
        metadata={
            "principal_id": target_principal_id,
            "tier": tier,
            "duration_months": duration_months,
            "before": before,
            "after": _snapshot(record),
        },
    )
    logger.info("Complimentary subscription granted principal_id=%s tier=%s months=%s", target_principal_id, tier, duration_months)
    return record


def revoke(
    s: "Session",
    acting_admin: "AdminRecord",
    actor: "Principal",
    principal_id: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> "SubscriptionRecord":
    """Administrative override (fraud, chargeback): effective immediately."""
    if not is_super_admin(acting_admin):
        raise NotSuperAdmin("Only super admins can revoke subscriptions.")
    now = now or utcnow()
    record = get_subscription(s, principal_id, now)
    if record is None:
        raise RecordNotFound()
    before = _snapshot(record)
    _transition(record, STATUS_REVOKED)
    record.cancel_at_period_end = False
    record.cancelled_at = now
    record.updated_at = now
    s.flush()
    record_event(
        s,
        actor=actor,
        action="subscription.revoke",
        entity_type="SubscriptionRecord",
        entity_id=str(record.id),
        reason=reason,
        metadata={"principal_id": principal_id, "before": before, "after": _snapshot(record)},
    )
    logger.info("Subscription revoked principal_id=%s", principal_id)
    return record


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def cancel(
    s: "Session",
    principal_id: str,
    immediate: bool,
    *,
    actor: "Principal",
    provider: "PaymentProvider | None" = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> "SubscriptionRecord":
    """
    Deferred cancellation keeps the record active until current_period_end;
    immediate cancellation ends the entitlement now.
    """
    now = now or utcnow()
    record = get_subscription(s, principal_id, now)
    if record is None:
        raise RecordNotFound("No subscription found.")
    if record.status not in (STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE, STATUS_INCOMPLETE):
        raise InvalidTransition(f"Cannot cancel a {record.status} subscription.")
    if not immediate and record.status == STATUS_INCOMPLETE:
        raise InvalidTransition("An incomplete subscription can only be cancelled immediately.")

    before = _snapshot(record)
    if provider is not None and record.payment_subscription_ref:
        provider.cancel(record.payment_subscription_ref, at_period_end=not immediate)

    if immediate:
        _transition(record, STATUS_CANCELLED)
        record.cancel_at_period_end = False
        record.cancelled_at = now
    else:
        record.cancel_at_period_end = True
    record.updated_at = now
    s.flush()

    record_event(
        s,
        actor=actor,
        action="subscription.cancel",
        entity_type="SubscriptionRecord",
        entity_id=str(record.id),
        reason=reason,
        metadata={"principal_id": principal_id, "immediate": immediate, "before": before, "after": _snapshot(record)},
    )
    logger.info("Subscription cancel principal_id=%s immediate=%s", principal_id, immediate)
    return record


def resume(
    s: "Session",
    principal_id: str,
    *,
    actor: "Principal",
    provider: "PaymentProvider | None" = None,
    now: datetime | None = None,
) -> "SubscriptionRecord":
    """Undo a deferred cancellation while the period is still running."""
    now = now or utcnow()
    record = get_subscription(s, principal_id, now)
    if record is None or not record.cancel_at_period_end or record.status not in ENTITLED_STATUSES:
        raise RecordNotFound("No subscription pending cancellation.")
    if provider is not None and record.payment_subscription_ref:
        provider.resume(record.payment_subscription_ref)
    record.cancel_at_period_end = False
    record.updated_at = now
    s.flush()
    record_event(
        s,
        actor=actor,
        action="subscription.resume",
        entity_type="SubscriptionRecord",
        entity_id=str(record.id),
        metadata={"principal_id": principal_id},
    )
    logger.info("Subscription resumed principal_id=%s", principal_id)
    return record


# ---------------------------------------------------------------------------
# Promo grants
# ---------------------------------------------------------------------------


# Statuses in which the provider may still bill or retry a charge
BILLABLE_STATUSES = (STATUS_ACTIVE, STATUS_TRIALING, STATUS_PAST_DUE, STATUS_INCOMPLETE)


def is_full_grant(promo: "PromoCode") -> bool:
    return promo.discount_type == DISCOUNT_PERCENTAGE and Decimal(promo.discount_value) >= 100


def check_promo_eligible(
    s: "Session",
    principal_id: str,
    tier: str,
    promo: "PromoCode",
    now: datetime,
) -> None:
    """
    Refuse a redemption the principal's current subscription cannot take. A revoked
    record accepts no code. A complimentary period never replaces a subscription
    the provider is still billing, nor a running period of a higher tier.
    """
    record = get_subscription(s, principal_id, now)
    if record is None:
        return
    if record.status == STATUS_REVOKED:
        raise RedemptionNotAllowed("Subscription is revoked.", reason="subscription_revoked")
    if not is_full_grant(promo):
        return
    if record.payment_subscription_ref and record.status in BILLABLE_STATUSES:
        raise RedemptionNotAllowed(
            "A paid subscription is still running; cancel it before redeeming this code.",
            reason="paid_subscription_active",
        )
    if effective_tier(record, now) != TIER_FREE and TIER_RANK[record.tier] > TIER_RANK[tier]:
        raise RedemptionNotAllowed(
            f"Current {record.tier} period outranks the {tier} code.",
            reason="would_downgrade",
        )


def apply_promo_grant(
    s: "Session",
    principal_id: str,
    tier: str,
    promo: "PromoCode",
    now: datetime | None = None,
) -> SubscriptionGrant:
    """
    A full percentage discount grants a complimentary period of the target tier;
    any other discount is returned to be applied at checkout.
    """
    now = now or utcnow()
    check_promo_eligible(s, principal_id, tier, promo, now)
    discount_value = Decimal(promo.discount_value)
    if is_full_grant(promo):
        record, _before = _write_complimentary(
            s,
            principal_id,
            tier,
            PROMO_GRANT_MONTHS,
            now,
            granted_by=None,
            reason=f"promo:{promo.code}",
        )
        return SubscriptionGrant(tier, True, promo.discount_type, discount_value, record)
    return SubscriptionGrant(tier, False, promo.discount_type, discount_value)


def serialize_subscription(record: "SubscriptionRecord | None", now: datetime | None = None) -> dict:
    now = now or utcnow()
    if record is None:
        return {"tier": TIER_FREE, "effective_tier": TIER_FREE, "status": None}
    return {
        "id": record.id,
        "principal_id": record.principal_id,
        "tier": record.tier,
        "effective_tier": effective_tier(record, now),
        "status": record.status,
        "current_period_start": isoformat(record.current_period_start),
        "current_period_end": isoformat(record.current_period_end),
        "cancel_at_period_end": record.cancel_at_period_end,
        "is_complimentary": record.is_complimentary,
        "payment_subscription_ref": record.payment_subscription_ref,
        "cancelled_at": isoformat(record.cancelled_at),
    }
