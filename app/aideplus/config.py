import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    supabase_url: str
    supabase_anon_key: str
    supabase_service_role_key: str

    hcaptcha_site_key: str
    hcaptcha_secret_key: str
    hcaptcha_min_score: float

    stripe_secret_key: str
    stripe_webhook_secret: str
    stripe_price_basic: str
    stripe_price_plus: str
    stripe_price_premium: str

    upstream_timeout_seconds: float


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///aideplus.db"),
        supabase_url=_getenv("SUPABASE_URL", ""),
        supabase_anon_key=_getenv("SUPABASE_ANON_KEY", ""),
        supabase_service_role_key=_getenv("SUPABASE_SERVICE_ROLE_KEY", ""),
        hcaptcha_site_key=_getenv("HCAPTCHA_SITE_KEY", ""),
        hcaptcha_secret_key=_getenv("HCAPTCHA_SECRET_KEY", ""),
        hcaptcha_min_score=float(_getenv("HCAPTCHA_MIN_SCORE", "0.5")),
        stripe_secret_key=_getenv("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=_getenv("STRIPE_WEBHOOK_SECRET", ""),
        stripe_price_basic=_getenv("STRIPE_PRICE_BASIC", ""),
        stripe_price_plus=_getenv("STRIPE_PRICE_PLUS", ""),
        stripe_price_premium=_getenv("STRIPE_PRICE_PREMIUM", ""),
        upstream_timeout_seconds=float(_getenv("UPSTREAM_TIMEOUT_SECONDS", "10")),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "SUPABASE_URL": s.supabase_url,
        "SUPABASE_ANON_KEY": s.supabase_anon_key,
        "SUPABASE_SERVICE_ROLE_KEY": s.supabase_service_role_key,
        "HCAPTCHA_SITE_KEY": s.hcaptcha_site_key,
        "HCAPTCHA_SECRET_KEY": s.hcaptcha_secret_key,
        "HCAPTCHA_MIN_SCORE": s.hcaptcha_min_score,
        "STRIPE_SECRET_KEY": s.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": s.stripe_webhook_secret,
        # price id -> tier, used when mapping provider subscription items
        "STRIPE_PRICE_TIERS": {
            price: tier
            for price, tier in (
                (s.stripe_price_basic, "basic"),
                (s.stripe_price_plus, "plus"),
                (s.stripe_price_premium, "premium"),
            )
            if price
        },
        "UPSTREAM_TIMEOUT_SECONDS": s.upstream_timeout_seconds,
        # JSON API; bodies are small
        "MAX_CONTENT_LENGTH": 1 * 1024 * 1024,
    }
