"""
Stripe webhook endpoint: verify the signature, map the Stripe payload to a
provider-neutral SubscriptionEvent, hand it to the lifecycle service.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from flask import Blueprint, current_app, jsonify, request

from app.aideplus.constants import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_INCOMPLETE,
    STATUS_PAST_DUE,
    STATUS_TRIALING,
)
from app.aideplus.db import db_session
from app.aideplus.errors import ServiceUnavailable, UnknownEventType, ValidationError
from app.aideplus.modules.subscriptions import service as sub_svc
from app.aideplus.utils import from_unix

bp = Blueprint("webhooks", __name__)
logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

STRIPE_STATUS_MAP = {
    "active": STATUS_ACTIVE,
    "trialing": STATUS_TRIALING,
    "past_due": STATUS_PAST_DUE,
    "unpaid": STATUS_PAST_DUE,
    "paused": STATUS_PAST_DUE,
    "incomplete": STATUS_INCOMPLETE,
    "incomplete_expired": STATUS_CANCELLED,
    "canceled": STATUS_CANCELLED,
}

STRIPE_EVENT_MAP = {
    "customer.subscription.created": sub_svc.EVENT_SUBSCRIPTION_UPSERTED,
    "customer.subscription.updated": sub_svc.EVENT_SUBSCRIPTION_UPSERTED,
    "customer.subscription.deleted": sub_svc.EVENT_SUBSCRIPTION_DELETED,
    "invoice.payment_failed": sub_svc.EVENT_PAYMENT_FAILED,
    "invoice.payment_succeeded": sub_svc.EVENT_PAYMENT_SUCCEEDED,
    "checkout.session.completed": sub_svc.EVENT_CHECKOUT_COMPLETED,
}


def _first_item(obj: dict[str, Any]) -> dict[str, Any]:
    items = ((obj.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def _invoice_subscription_ref(invoice: dict[str, Any]) -> str | None:
    ref = invoice.get("subscription")
    if ref:
        return ref if isinstance(ref, str) else ref.get("id")
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return details.get("subscription")


def _invoice_period(invoice: dict[str, Any]) -> tuple[Any, Any]:
    lines = ((invoice.get("lines") or {}).get("data")) or []
    period = (lines[0].get("period") if lines else None) or {}
    return from_unix(period.get("start")), from_unix(period.get("end"))


def _principal_ref(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata") or {}
    return metadata.get("principal_id") or metadata.get("userId") or obj.get("client_reference_id")


def map_stripe_event(event: dict[str, Any], price_tiers: dict[str, str]) -> sub_svc.SubscriptionEvent:
    stripe_type = event.get("type") or ""
    event_type = STRIPE_EVENT_MAP.get(stripe_type)
    if event_type is None:
        raise UnknownEventType(f"Unhandled Stripe event type: {stripe_type}")

    obj = ((event.get("data") or {}).get("object")) or {}
    sequence = int(event.get("sequence") or event.get("created") or 0)
    common = {"event_type": event_type, "sequence": sequence, "event_id": event.get("id")}

    if event_type in (sub_svc.EVENT_SUBSCRIPTION_UPSERTED, sub_svc.EVENT_SUBSCRIPTION_DELETED):
        item = _first_item(obj)
        price_id = (item.get("price") or {}).get("id")
        return sub_svc.SubscriptionEvent(
            subscription_ref=obj.get("id"),
            customer_ref=obj.get("customer"),
            principal_id=_principal_ref(obj),
            status=STRIPE_STATUS_MAP.get(obj.get("status") or ""),
            tier=price_tiers.get(price_id or ""),
            # newer API versions carry the period on the subscription item
            period_start=from_unix(obj.get("current_period_start") or item.get("current_period_start")),
            period_end=from_unix(obj.get("current_period_end") or item.get("current_period_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            **common,
        )
    if event_type in (sub_svc.EVENT_PAYMENT_FAILED, sub_svc.EVENT_PAYMENT_SUCCEEDED):
        period_start, period_end = _invoice_period(obj)
        return sub_svc.SubscriptionEvent(
            subscription_ref=_invoice_subscription_ref(obj),
            customer_ref=obj.get("customer"),
            period_start=period_start,
            period_end=period_end,
            **common,
        )
    return sub_svc.SubscriptionEvent(
        subscription_ref=obj.get("subscription"),
        customer_ref=obj.get("customer"),
        principal_id=_principal_ref(obj),
        **common,
    )


@bp.post("/stripe")
def stripe_webhook():
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET") or ""
    if not secret:
        raise ServiceUnavailable("Stripe webhooks are not configured.")

    payload = request.get_data(as_text=True)
    signature = request.headers.get("Stripe-Signature") or ""
    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, SIGNATURE_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise ValidationError(["Webhook signature verification failed."]) from e

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise ValidationError(["Webhook payload is not valid JSON."]) from e

    logger.info("Processing Stripe webhook id=%s type=%s", event.get("id"), event.get("type"))
    try:
        mapped = map_stripe_event(event, current_app.config.get("STRIPE_PRICE_TIERS") or {})
    except UnknownEventType:
        # acknowledge so Stripe stops redelivering events we do not subscribe to
        logger.info("Unhandled webhook event type=%s", event.get("type"))
        return jsonify({"received": True, "outcome": sub_svc.OUTCOME_IGNORED})

    s = db_session()
    outcome = sub_svc.apply_webhook_event(s, mapped)
    s.commit()
    return jsonify({"received": True, "outcome": outcome.outcome})
