"""Usage quota metering: limits, period rollover, atomic increments."""
import threading
from datetime import datetime, timedelta

import pytest

from app.aideplus import create_app
from app.aideplus.db import session_scope
from app.aideplus.errors import FeatureUnavailable, QuotaExceeded, ValidationError
from app.aideplus.models import Base, Profile
from app.aideplus.modules.admins.models import AdminRecord
from app.aideplus.modules.subscriptions.models import SubscriptionRecord
from app.aideplus.modules.usage import service as usage_svc
from app.aideplus.modules.usage.models import UsageRecord

NOW = datetime(2026, 3, 10, 12, 0, 0)

USERS = {
    "tok-free": {"id": "u-free", "email": "free@example.com"},
    "tok-basic": {"id": "u-basic", "email": "basic@example.com"},
    "tok-support": {"id": "u-support", "email": "support@example.com"},
}


class FakeIdentityProvider:
    def get_user(self, token):
        from app.aideplus.errors import Unauthenticated

        if token not in USERS:
            raise Unauthenticated()
        return USERS[token]


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("SUPABASE_URL", "SUPABASE_ANON_KEY", "HCAPTCHA_SECRET_KEY", "STRIPE_SECRET_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    app.extensions["identity_provider"] = FakeIdentityProvider()

    with session_scope(app) as s:
        for u in USERS.values():
            s.add(Profile(id=u["id"], email=u["email"]))
        s.flush()
        s.add(
            SubscriptionRecord(
                principal_id="u-basic",
                tier="basic",
                status="active",
                current_period_start=datetime(2026, 1, 1),
                current_period_end=datetime(2099, 1, 1),
            )
        )
        s.add(AdminRecord(principal_id="u-support", role="support", permissions={"manage_users": True}))
    return app


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _consume(app, principal_id, kind, amount=1, now=NOW):
    with session_scope(app) as s:
        return usage_svc.consume(s, principal_id, kind, amount, now)


def _used(app, principal_id, kind, period_start):
    with session_scope(app) as s:
        return (
            s.query(UsageRecord.used)
            .filter(
                UsageRecord.principal_id == principal_id,
                UsageRecord.resource_kind == kind,
                UsageRecord.period_start == period_start,
            )
            .scalar()
        )


def test_consume_counts_down_remaining(app):
    assert _consume(app, "u-free", "chat_message") == 9
    assert _consume(app, "u-free", "chat_message", 4) == 5


def test_quota_exceeded_does_not_mutate(app):
    assert _consume(app, "u-free", "chat_message", 8) == 2
    with pytest.raises(QuotaExceeded) as exc:
        _consume(app, "u-free", "chat_message", 3)
    assert exc.value.extra["upgrade_required"] is True
    assert exc.value.extra["remaining"] == 2
    assert _used(app, "u-free", "chat_message", datetime(2026, 3, 10)) == 8
    assert _consume(app, "u-free", "chat_message", 2) == 0


def test_zero_limit_is_feature_unavailable(app):
    with pytest.raises(FeatureUnavailable) as exc:
        _consume(app, "u-free", "export")
    assert exc.value.extra["upgrade_required"] is True
    with session_scope(app) as s:
        assert s.query(UsageRecord).count() == 0


def test_unlimited_returns_none(app):
    for _ in range(25):
        assert _consume(app, "u-basic", "simulation") is None
    assert _used(app, "u-basic", "simulation", datetime(2026, 3, 10)) == 25


def test_invalid_input(app):
    with pytest.raises(ValidationError):
        _consume(app, "u-free", "teleport")
    with pytest.raises(ValidationError):
        _consume(app, "u-free", "chat_message", 0)


def test_daily_rollover(app):
    before_midnight = datetime(2026, 3, 10, 23, 59, 0)
    assert _consume(app, "u-free", "chat_message", 10, now=before_midnight) == 0
    with pytest.raises(QuotaExceeded):
        _consume(app, "u-free", "chat_message", now=before_midnight + timedelta(seconds=30))

    assert _consume(app, "u-free", "chat_message", now=datetime(2026, 3, 11, 0, 0, 0)) == 9

    assert _used(app, "u-free", "chat_message", datetime(2026, 3, 10)) == 10
    assert _used(app, "u-free", "chat_message", datetime(2026, 3, 11)) == 1


def test_exports_reset_monthly(app):
    with session_scope(app) as s:
        s.add(
            SubscriptionRecord(
                principal_id="u-free",
                tier="plus",
                status="active",
                current_period_start=datetime(2026, 1, 1),
                current_period_end=datetime(2099, 1, 1),
            )
        )
    assert _consume(app, "u-free", "export", 5, now=datetime(2026, 3, 1, 0, 0)) == 0
    with pytest.raises(QuotaExceeded):
        _consume(app, "u-free", "export", now=datetime(2026, 3, 31, 23, 59))
    assert _consume(app, "u-free", "export", now=datetime(2026, 4, 1, 0, 0)) == 4


def test_concurrent_consume_never_exceeds_limit(app):
    workers = 15
    barrier = threading.Barrier(workers)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            _consume(app, "u-free", "chat_message")
            outcome = "ok"
        except QuotaExceeded:
            outcome = "quota"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(results) == workers
    assert results.count("ok") == 10
    assert results.count("quota") == 5
    assert _used(app, "u-free", "chat_message", datetime(2026, 3, 10)) == 10


def test_usage_summary_and_upgrade_hint(app):
    _consume(app, "u-free", "chat_message", 8)
    with session_scope(app) as s:
        summary = usage_svc.usage_summary(s, "u-free", NOW)
    chat = summary["usage"]["chat_message"]
    assert summary["tier"] == "free"
    assert (chat["current"], chat["limit"], chat["remaining"], chat["percentage"]) == (8, 10, 2, 80)
    assert summary["usage"]["export"]["available"] is False
    assert summary["upgrade"] == {"current_tier": "free", "recommended_tier": "basic", "reasons": ["chat_message"]}


def test_compact_usage_records(app):
    _consume(app, "u-free", "chat_message", now=datetime(2026, 1, 5, 9, 0))
    _consume(app, "u-free", "chat_message", now=NOW)
    with session_scope(app) as s:
        assert usage_svc.compact_usage_records(s, datetime(2026, 3, 1)) == 1
    with session_scope(app) as s:
        assert [r.period_start for r in s.query(UsageRecord).all()] == [datetime(2026, 3, 10)]


def test_consume_over_http(app):
    client = app.test_client()
    r = client.post("/api/me/usage/chat_message/consume", headers=_bearer("tok-free"), json={})
    assert r.status_code == 200
    assert r.json == {"resource_kind": "chat_message", "remaining": 9, "unlimited": False}

    r = client.post("/api/me/usage/chat_message/consume", headers=_bearer("tok-free"), json={"amount": 9})
    assert r.json["remaining"] == 0
    r = client.post("/api/me/usage/chat_message/consume", headers=_bearer("tok-free"), json={})
    assert r.status_code == 429
    assert r.json["error"] == "quota_exceeded"

    r = client.post("/api/me/usage/export/consume", headers=_bearer("tok-free"), json={})
    assert r.status_code == 403
    assert r.json["error"] == "feature_unavailable"
    assert r.json["upgrade_required"] is True

    r = client.post("/api/me/usage/teleport/consume", headers=_bearer("tok-free"), json={})
    assert r.status_code == 400

    r = client.get("/api/me/usage", headers=_bearer("tok-free"))
    assert r.json["usage"]["chat_message"]["current"] == 10


def test_usage_history_requires_paid_tier(app):
    client = app.test_client()
    r = client.get("/api/me/usage/history", headers=_bearer("tok-free"))
    assert r.status_code == 403
    assert r.json["required_tier"] == "basic"
    r = client.get("/api/me/usage/history", headers=_bearer("tok-basic"))
    assert r.status_code == 200


def test_admin_usage_view(app):
    _consume(app, "u-free", "content_view", 2)
    client = app.test_client()
    r = client.get("/admin/usage/u-free", headers=_bearer("tok-support"))
    assert r.status_code == 200
    assert r.json["history"][0]["used"] == 2
    assert client.get("/admin/usage/u-free", headers=_bearer("tok-basic")).status_code == 403
