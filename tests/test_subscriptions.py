"""Subscription lifecycle: effective tier, webhooks, grants, cancellation."""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta

import pytest

from app.aideplus import create_app
from app.aideplus.auth import Principal
from app.aideplus.db import session_scope
from app.aideplus.errors import NotSuperAdmin, RecordNotFound, TargetNotFound, UnknownEventType
from app.aideplus.models import AuditEvent, Base, Profile
from app.aideplus.modules.admins.models import AdminRecord
from app.aideplus.modules.subscriptions import service as sub_svc
from app.aideplus.modules.subscriptions.models import ProcessedWebhookEvent, SubscriptionRecord
from app.aideplus.modules.subscriptions.webhooks import map_stripe_event

WEBHOOK_SECRET = "whsec_test"
NOW = datetime(2026, 3, 10, 12, 0, 0)

USERS = {
    "tok-root": {"id": "u-root", "email": "root@example.com"},
    "tok-billing": {"id": "u-billing", "email": "billing@example.com"},
    "tok-user": {"id": "u-user", "email": "user@example.com"},
}


class FakeIdentityProvider:
    def get_user(self, token):
        from app.aideplus.errors import Unauthenticated

        if token not in USERS:
            raise Unauthenticated()
        return USERS[token]


class FakePaymentProvider:
    def __init__(self):
        self.calls = []

    def cancel(self, subscription_ref, *, at_period_end):
        self.calls.append(("cancel", subscription_ref, at_period_end))

    def resume(self, subscription_ref):
        self.calls.append(("resume", subscription_ref))


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_PRICE_PREMIUM", "price_premium")
    monkeypatch.setenv("STRIPE_PRICE_BASIC", "price_basic")
    for k in ("SUPABASE_URL", "SUPABASE_ANON_KEY", "HCAPTCHA_SECRET_KEY", "STRIPE_SECRET_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    app.extensions["identity_provider"] = FakeIdentityProvider()
    app.extensions["payment_provider"] = FakePaymentProvider()

    with session_scope(app) as s:
        for u in USERS.values():
            s.add(Profile(id=u["id"], email=u["email"]))
        s.flush()
        s.add(AdminRecord(principal_id="u-root", role="super_admin", permissions={}))
        s.add(AdminRecord(principal_id="u-billing", role="admin", permissions={"manage_subscriptions": True}))
    return app


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _admin(s, principal_id):
    return s.query(AdminRecord).filter(AdminRecord.principal_id == principal_id).one()


def _record(**kw):
    base = dict(
        principal_id="u-user",
        tier="premium",
        status="active",
        current_period_start=NOW - timedelta(days=5),
        current_period_end=NOW + timedelta(days=25),
        cancel_at_period_end=False,
        is_complimentary=False,
    )
    base.update(kw)
    return SubscriptionRecord(**base)


def _upsert_event(sequence, status="active", **kw):
    fields = dict(
        event_type=sub_svc.EVENT_SUBSCRIPTION_UPSERTED,
        sequence=sequence,
        subscription_ref="sub_123",
        principal_id="u-user",
        status=status,
        tier="premium",
        period_start=NOW - timedelta(days=1),
        period_end=NOW + timedelta(days=29),
        cancel_at_period_end=False,
    )
    fields.update(kw)
    return sub_svc.SubscriptionEvent(**fields)


# effective tier


def test_effective_tier_without_record_is_free():
    assert sub_svc.effective_tier(None, NOW) == "free"


@pytest.mark.parametrize(
    "status, end_offset_days, expected",
    [
        ("active", 10, "premium"),
        ("trialing", 10, "premium"),
        ("active", -1, "free"),
        ("past_due", 10, "free"),
        ("incomplete", 10, "free"),
        ("cancelled", 10, "free"),
        ("revoked", 10, "free"),
    ],
)
def test_effective_tier(status, end_offset_days, expected):
    record = _record(status=status, current_period_end=NOW + timedelta(days=end_offset_days))
    assert sub_svc.effective_tier(record, NOW) == expected


def test_deferred_cancel_keeps_tier_until_period_end():
    record = _record(cancel_at_period_end=True)
    assert sub_svc.effective_tier(record, NOW) == "premium"
    assert sub_svc.effective_tier(record, record.current_period_end) == "free"


# webhooks


def test_webhook_creates_record_and_duplicate_is_noop(app):
    with session_scope(app) as s:
        outcome = sub_svc.apply_webhook_event(s, _upsert_event(100), NOW)
        assert outcome.outcome == sub_svc.OUTCOME_APPLIED
    with session_scope(app) as s:
        before = sub_svc.get_subscription(s, "u-user", NOW)
        snapshot = (before.status, before.tier, before.current_period_end, before.updated_at)
        outcome = sub_svc.apply_webhook_event(s, _upsert_event(100), NOW + timedelta(minutes=5))
        assert outcome.outcome == sub_svc.OUTCOME_STALE
    with session_scope(app) as s:
        after = sub_svc.get_subscription(s, "u-user", NOW)
        assert (after.status, after.tier, after.current_period_end, after.updated_at) == snapshot
        assert after.last_event_sequence == 100
        assert s.query(AuditEvent).filter(AuditEvent.action.like("subscription.webhook.%")).count() == 1


def test_out_of_order_event_is_ignored(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(100, status="active"), NOW)
        sub_svc.apply_webhook_event(s, _upsert_event(200, status="past_due"), NOW)
        outcome = sub_svc.apply_webhook_event(s, _upsert_event(150, status="active"), NOW)
        assert outcome.outcome == sub_svc.OUTCOME_STALE
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "past_due"


def test_payment_failed_then_succeeded(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1), NOW)
        sub_svc.apply_webhook_event(
            s, sub_svc.SubscriptionEvent(sub_svc.EVENT_PAYMENT_FAILED, 2, subscription_ref="sub_123"), NOW
        )
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "free"
        sub_svc.apply_webhook_event(
            s, sub_svc.SubscriptionEvent(sub_svc.EVENT_PAYMENT_SUCCEEDED, 3, subscription_ref="sub_123"), NOW
        )
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "premium"


def test_subscription_deleted_cancels(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1), NOW)
        sub_svc.apply_webhook_event(
            s, sub_svc.SubscriptionEvent(sub_svc.EVENT_SUBSCRIPTION_DELETED, 2, subscription_ref="sub_123"), NOW
        )
        record = sub_svc.get_subscription(s, "u-user", NOW)
        assert record.status == "cancelled"
        assert record.cancelled_at == NOW


def test_event_for_unknown_subscription_without_principal(app):
    with session_scope(app) as s:
        with pytest.raises(RecordNotFound):
            sub_svc.apply_webhook_event(s, _upsert_event(1, principal_id=None, subscription_ref="sub_x"), NOW)
        with pytest.raises(RecordNotFound):
            sub_svc.apply_webhook_event(
                s, sub_svc.SubscriptionEvent(sub_svc.EVENT_PAYMENT_FAILED, 1, subscription_ref="sub_x"), NOW
            )
        with pytest.raises(UnknownEventType):
            sub_svc.apply_webhook_event(s, sub_svc.SubscriptionEvent("refund.created", 1), NOW)


def test_webhook_does_not_lift_revocation(app):
    root = Principal(id="u-root", email="root@example.com")
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1), NOW)
        sub_svc.revoke(s, _admin(s, "u-root"), root, "u-user", reason="chargeback", now=NOW)
        outcome = sub_svc.apply_webhook_event(s, _upsert_event(2, status="active"), NOW)
        assert outcome.outcome == sub_svc.OUTCOME_IGNORED
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "revoked"
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "free"


def _stripe_subscription_event(event_id, stripe_type, status, created=1773144000):
    return {
        "id": event_id,
        "type": stripe_type,
        "created": created,
        "data": {
            "object": {
                "id": "sub_123",
                "customer": "cus_1",
                "status": status,
                "cancel_at_period_end": False,
                "metadata": {"principal_id": "u-user"},
                "current_period_start": 1773100000,
                "current_period_end": 1775700000,
                "items": {"data": [{"price": {"id": "price_premium"}}]},
            }
        },
    }


def test_distinct_events_in_the_same_second_are_both_applied(app):
    tiers = {"price_premium": "premium"}
    created = map_stripe_event(_stripe_subscription_event("evt_a", "customer.subscription.created", "incomplete"), tiers)
    updated = map_stripe_event(_stripe_subscription_event("evt_b", "customer.subscription.updated", "active"), tiers)
    assert created.sequence == updated.sequence
    with session_scope(app) as s:
        assert sub_svc.apply_webhook_event(s, created, NOW).outcome == sub_svc.OUTCOME_APPLIED
        assert sub_svc.apply_webhook_event(s, updated, NOW).outcome == sub_svc.OUTCOME_APPLIED
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "active"
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "premium"

        # a redelivery of the earlier event is recognised by its id
        assert sub_svc.apply_webhook_event(s, created, NOW).outcome == sub_svc.OUTCOME_DUPLICATE
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "active"
        assert s.query(ProcessedWebhookEvent).count() == 2


def test_same_second_event_behind_current_state_is_skipped(app):
    tiers = {"price_premium": "premium"}
    updated = map_stripe_event(_stripe_subscription_event("evt_b", "customer.subscription.updated", "active"), tiers)
    created = map_stripe_event(_stripe_subscription_event("evt_a", "customer.subscription.created", "incomplete"), tiers)
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, updated, NOW)
        assert sub_svc.apply_webhook_event(s, created, NOW).outcome == sub_svc.OUTCOME_STALE
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "active"


def test_payment_succeeded_keeps_trial(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1, status="trialing"), NOW)
        sub_svc.apply_webhook_event(
            s, sub_svc.SubscriptionEvent(sub_svc.EVENT_PAYMENT_SUCCEEDED, 2, subscription_ref="sub_123"), NOW
        )
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "trialing"


def test_payment_succeeded_completes_incomplete(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1, status="incomplete"), NOW)
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "free"
        sub_svc.apply_webhook_event(
            s, sub_svc.SubscriptionEvent(sub_svc.EVENT_PAYMENT_SUCCEEDED, 2, subscription_ref="sub_123"), NOW
        )
        assert sub_svc.get_subscription(s, "u-user", NOW).status == "active"
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "premium"


def test_map_stripe_subscription_event():
    event = {
        "id": "evt_1",
        "type": "customer.subscription.updated",
        "created": 1773144000,
        "data": {
            "object": {
                "id": "sub_123",
                "customer": "cus_1",
                "status": "unpaid",
                "cancel_at_period_end": True,
                "metadata": {"userId": "u-user"},
                "items": {
                    "data": [
                        {
                            "price": {"id": "price_premium"},
                            "current_period_start": 1772000000,
                            "current_period_end": 1774600000,
                        }
                    ]
                },
            }
        },
    }
    mapped = map_stripe_event(event, {"price_premium": "premium"})
    assert mapped.event_type == sub_svc.EVENT_SUBSCRIPTION_UPSERTED
    assert mapped.sequence == 1773144000
    assert mapped.status == "past_due"
    assert mapped.tier == "premium"
    assert mapped.principal_id == "u-user"
    assert mapped.cancel_at_period_end is True
    assert mapped.period_end > mapped.period_start


def test_map_stripe_unknown_type():
    with pytest.raises(UnknownEventType):
        map_stripe_event({"type": "charge.refunded", "data": {"object": {}}}, {})


def _signed(payload: str, secret: str = WEBHOOK_SECRET) -> dict:
    ts = int(time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def _stripe_subscription_payload(created: int) -> str:
    start = int(time.time()) - 86400
    return json.dumps(
        {
            "id": f"evt_{created}",
            "type": "customer.subscription.created",
            "created": created,
            "data": {
                "object": {
                    "id": "sub_http",
                    "customer": "cus_1",
                    "status": "active",
                    "cancel_at_period_end": False,
                    "metadata": {"principal_id": "u-user"},
                    "current_period_start": start,
                    "current_period_end": start + 30 * 86400,
                    "items": {"data": [{"price": {"id": "price_basic"}}]},
                }
            },
        }
    )


def test_stripe_webhook_http(app):
    client = app.test_client()
    payload = _stripe_subscription_payload(1000)
    r = client.post("/webhooks/stripe", data=payload, headers=_signed(payload))
    assert r.status_code == 200
    assert r.json == {"received": True, "outcome": "applied"}

    r = client.post("/webhooks/stripe", data=payload, headers=_signed(payload))
    assert r.json["outcome"] == "duplicate"

    with session_scope(app) as s:
        assert sub_svc.effective_tier_for(s, "u-user") == "basic"


def test_stripe_webhook_bad_signature(app):
    payload = _stripe_subscription_payload(1000)
    r = app.test_client().post("/webhooks/stripe", data=payload, headers=_signed(payload, secret="whsec_other"))
    assert r.status_code == 400
    with session_scope(app) as s:
        assert s.query(SubscriptionRecord).count() == 0


def test_stripe_webhook_unhandled_type_acknowledged(app):
    payload = json.dumps({"id": "evt_x", "type": "charge.refunded", "created": 5, "data": {"object": {}}})
    r = app.test_client().post("/webhooks/stripe", data=payload, headers=_signed(payload))
    assert r.status_code == 200
    assert r.json["outcome"] == "ignored"


# grants


def test_grant_scenario(app):
    root = Principal(id="u-root", email="root@example.com")
    with session_scope(app) as s:
        record = sub_svc.grant(s, _admin(s, "u-root"), root, "u-user", "premium", 3, reason="partner", now=NOW)
        assert record.is_complimentary is True
        assert record.payment_subscription_ref is None
        assert record.status == "active"
        assert record.current_period_end == datetime(2026, 6, 10, 12, 0, 0)
        assert sub_svc.effective_tier_for(s, "u-user", NOW) == "premium"


def test_grant_overwrites_paid_record(app):
    root = Principal(id="u-root", email="root@example.com")
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1, tier="basic"), NOW)
        record = sub_svc.grant(s, _admin(s, "u-root"), root, "u-user", "plus", 1, now=NOW)
        assert record.tier == "plus"
        assert record.is_complimentary is True
        assert s.query(SubscriptionRecord).count() == 1


def test_grant_requires_super_admin_even_with_manage_subscriptions(app):
    billing = Principal(id="u-billing", email="billing@example.com")
    with session_scope(app) as s:
        with pytest.raises(NotSuperAdmin):
            sub_svc.grant(s, _admin(s, "u-billing"), billing, "u-user", "premium", 1, now=NOW)

    r = app.test_client().post(
        "/admin/subscriptions/grant",
        headers=_bearer("tok-billing"),
        json={"principal_id": "u-user", "tier": "premium", "duration_months": 1},
    )
    assert r.status_code == 403


def test_grant_unknown_principal(app):
    root = Principal(id="u-root", email="root@example.com")
    with session_scope(app) as s:
        with pytest.raises(TargetNotFound):
            sub_svc.grant(s, _admin(s, "u-root"), root, "u-ghost", "premium", 1, now=NOW)


def test_grant_http_validation_and_success(app):
    client = app.test_client()
    r = client.post(
        "/admin/subscriptions/grant",
        headers=_bearer("tok-root"),
        json={"principal_id": "u-user", "tier": "free", "duration_months": 0},
    )
    assert r.status_code == 400
    assert len(r.json["errors"]) == 2

    r = client.post(
        "/admin/subscriptions/grant",
        headers=_bearer("tok-root"),
        json={"principal_id": "u-user", "tier": "plus", "duration_months": 2, "reason": "support case"},
    )
    assert r.status_code == 201
    assert r.json["subscription"]["effective_tier"] == "plus"

    r = client.get("/api/me/subscription", headers=_bearer("tok-user"))
    assert r.json["subscription"]["tier"] == "plus"
    assert r.json["subscription"]["is_complimentary"] is True


def test_list_subscriptions_requires_permission(app):
    client = app.test_client()
    assert client.get("/admin/subscriptions", headers=_bearer("tok-billing")).status_code == 200
    assert client.get("/admin/subscriptions", headers=_bearer("tok-user")).status_code == 403


# cancellation


def test_deferred_cancel_rolls_over_lazily(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1), NOW)
    provider = app.extensions["payment_provider"]
    user = Principal(id="u-user", email="user@example.com")
    with session_scope(app) as s:
        record = sub_svc.cancel(s, "u-user", False, actor=user, provider=provider, now=NOW)
        assert record.cancel_at_period_end is True
        assert record.status == "active"
        period_end = record.current_period_end
    assert provider.calls == [("cancel", "sub_123", True)]

    with session_scope(app) as s:
        assert sub_svc.effective_tier_for(s, "u-user", period_end - timedelta(seconds=1)) == "premium"
    with session_scope(app) as s:
        record = sub_svc.get_subscription(s, "u-user", period_end + timedelta(seconds=1))
        assert record.status == "cancelled"
        assert record.cancelled_at == period_end


def test_resume_undoes_deferred_cancel(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1, cancel_at_period_end=True, period_end=datetime(2099, 1, 1)), NOW)
    client = app.test_client()
    r = client.post("/api/me/subscription/resume", headers=_bearer("tok-user"))
    assert r.status_code == 200
    assert r.json["subscription"]["cancel_at_period_end"] is False
    assert app.extensions["payment_provider"].calls == [("resume", "sub_123")]


def test_immediate_cancel_over_http(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1, period_end=datetime(2099, 1, 1)), NOW)
    r = app.test_client().post("/api/me/subscription/cancel", headers=_bearer("tok-user"), json={"immediate": True})
    assert r.status_code == 200
    assert r.json["subscription"]["status"] == "cancelled"
    assert r.json["subscription"]["effective_tier"] == "free"


def test_cancel_without_subscription(app):
    r = app.test_client().post("/api/me/subscription/cancel", headers=_bearer("tok-user"), json={})
    assert r.status_code == 404
    assert r.json["error"] == "record_not_found"


def test_admin_cancel(app):
    with session_scope(app) as s:
        sub_svc.apply_webhook_event(s, _upsert_event(1, period_end=datetime(2099, 1, 1)), NOW)
    r = app.test_client().post(
        "/admin/subscriptions/u-user/cancel", headers=_bearer("tok-billing"), json={"reason": "requested by email"}
    )
    assert r.status_code == 200
    assert r.json["subscription"]["cancel_at_period_end"] is True
