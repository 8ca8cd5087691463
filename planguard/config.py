# planguard/config.py
from __future__ import annotations
import os

from dotenv import load_dotenv

load_dotenv()


def _csv(name: str) -> list[str]:
    return [s.strip() for s in os.environ.get(name, "").split(",") if s.strip()]


class Config:
    # Flask
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-key")
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Supabase (service role; plan tables bypass RLS)
    SUPABASE_URL = os.environ.get("SUPABASE_URL", "")
    SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")

    # 'supabase' | 'memory'
    PLAN_STORE_BACKEND = os.environ.get("PLAN_STORE_BACKEND", "supabase")
    # 'production' | 'permissive'
    ENTITLEMENT_POLICY = os.environ.get("ENTITLEMENT_POLICY", "production")

    # Stripe
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_PRICE_BASIC = os.environ.get("STRIPE_PRICE_BASIC", "")
    STRIPE_PRICE_EXTENDED = os.environ.get("STRIPE_PRICE_EXTENDED", "")
    STRIPE_PRICE_UNLIMITED = os.environ.get("STRIPE_PRICE_UNLIMITED", "")

    # Lemon Squeezy
    LEMON_WEBHOOK_SECRET = os.environ.get("LEMON_WEBHOOK_SECRET", "")
    LEMON_PRODUCT_BASIC = os.environ.get("LEMON_PRODUCT_BASIC", "")
    LEMON_PRODUCT_EXTENDED = os.environ.get("LEMON_PRODUCT_EXTENDED", "")
    LEMON_PRODUCT_UNLIMITED = os.environ.get("LEMON_PRODUCT_UNLIMITED", "")

    # Paddle (classic alerts, RSA-signed); PEM newlines may be escaped as "\n"
    PADDLE_PUBLIC_KEY = os.environ.get("PADDLE_PUBLIC_KEY", "").replace("\\n", "\n")
    PADDLE_PLAN_BASIC = os.environ.get("PADDLE_PLAN_BASIC", "")
    PADDLE_PLAN_EXTENDED = os.environ.get("PADDLE_PLAN_EXTENDED", "")
    PADDLE_PLAN_UNLIMITED = os.environ.get("PADDLE_PLAN_UNLIMITED", "")

    # Usage counter CAS retries
    CONSUME_MAX_RETRIES = int(os.environ.get("CONSUME_MAX_RETRIES", "3"))
    CONSUME_RETRY_BACKOFF = float(os.environ.get("CONSUME_RETRY_BACKOFF", "0.05"))

    # CORS origins (comma-separated); empty = allow all
    CORS_ORIGINS = _csv("CORS_ORIGINS")


class DevConfig(Config):
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    PLAN_STORE_BACKEND = os.environ.get("PLAN_STORE_BACKEND", "memory")


class ProdConfig(Config):
    DEBUG = False


class TestConfig(Config):
    TESTING = True
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    PLAN_STORE_BACKEND = "memory"
    ENTITLEMENT_POLICY = "production"
    CONSUME_RETRY_BACKOFF = 0.0
    STRIPE_WEBHOOK_SECRET = "whsec_test"
    STRIPE_PRICE_BASIC = "price_basic"
    STRIPE_PRICE_EXTENDED = "price_extended"
    STRIPE_PRICE_UNLIMITED = "price_unlimited"
    LEMON_WEBHOOK_SECRET = "lemon_test_secret"
    LEMON_PRODUCT_BASIC = "1001"
    LEMON_PRODUCT_EXTENDED = "1002"
    LEMON_PRODUCT_UNLIMITED = "1003"
    PADDLE_PLAN_BASIC = "2001"
    PADDLE_PLAN_EXTENDED = "2002"
    PADDLE_PLAN_UNLIMITED = "2003"


def get_config(env: str | None = None):
    """Resolve config by env string or environment variables."""
    env = (env or os.environ.get("PLANGUARD_ENV") or os.environ.get("FLASK_ENV") or "production").lower()
    if env in ("dev", "development"):
        return DevConfig
    if env in ("test", "testing"):
        return TestConfig
    return ProdConfig


def price_map(config) -> dict:
    """Stripe price id -> tier name, from configured price ids."""
    pairs = (
        (config.get("STRIPE_PRICE_BASIC"), "basic"),
        (config.get("STRIPE_PRICE_EXTENDED"), "extended"),
        (config.get("STRIPE_PRICE_UNLIMITED"), "unlimited"),
    )
    return {pid: tier for pid, tier in pairs if pid}


def product_map(config) -> dict:
    """Lemon Squeezy product id -> tier name."""
    pairs = (
        (config.get("LEMON_PRODUCT_BASIC"), "basic"),
        (config.get("LEMON_PRODUCT_EXTENDED"), "extended"),
        (config.get("LEMON_PRODUCT_UNLIMITED"), "unlimited"),
    )
    return {str(pid): tier for pid, tier in pairs if pid}


def paddle_map(config) -> dict:
    """Paddle product / subscription plan id -> tier name."""
    pairs = (
        (config.get("PADDLE_PLAN_BASIC"), "basic"),
        (config.get("PADDLE_PLAN_EXTENDED"), "extended"),
        (config.get("PADDLE_PLAN_UNLIMITED"), "unlimited"),
    )
    return {str(pid): tier for pid, tier in pairs if pid}
