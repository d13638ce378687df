import pytest

from app.aideplus import create_app
from app.aideplus.models import Base

UPSTREAM_ENV = (
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "HCAPTCHA_SITE_KEY",
    "HCAPTCHA_SECRET_KEY",
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
)


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in UPSTREAM_ENV:
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_healthz_ok(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_unknown_route_is_json_404(client):
    r = client.get("/nope")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_missing_identity_provider_is_service_unavailable(client):
    # no SUPABASE_* configured: an outage, not "not logged in"
    r = client.get("/auth/me", headers={"Authorization": "Bearer anything"})
    assert r.status_code == 503
    assert r.json["error"] == "service_unavailable"


def test_production_requires_postgres(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "strong-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'prod.db'}")
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError, match="Postgres"):
        create_app()


def test_start_script_gunicorn_command(monkeypatch):
    from scripts import start

    monkeypatch.setenv("PORT", "9000")
    monkeypatch.delenv("WEB_CONCURRENCY", raising=False)
    port = start._int_env("PORT", start.DEFAULT_PORT, low=1, high=65535)
    workers = start._int_env("WEB_CONCURRENCY", 2, low=1, high=64)
    argv = start.gunicorn_argv(port, workers, 60)
    assert argv[:2] == ["gunicorn", "app.wsgi:app"]
    assert "0.0.0.0:9000" in argv
    assert argv[argv.index("--workers") + 1] == "2"


def test_start_script_rejects_bad_port(monkeypatch):
    from scripts import start

    monkeypatch.setenv("PORT", "http")
    with pytest.raises(SystemExit):
        start._int_env("PORT", start.DEFAULT_PORT, low=1, high=65535)
