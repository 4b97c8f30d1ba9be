"""Configuration management for the payment reconciliation service"""

import os
import logging
from typing import List

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: {name}={raw!r} is not an integer, using default {default}")
        return default


def _list_env(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


class Config:
    """Application configuration"""

    # Environment detection - ENVIRONMENT takes priority, then deployment heuristics
    ENVIRONMENT = os.getenv("ENVIRONMENT", "").lower().strip()
    if ENVIRONMENT:
        IS_PRODUCTION = ENVIRONMENT == "production"
    else:
        IS_PRODUCTION = bool(os.getenv("RAILWAY_PUBLIC_DOMAIN")) or os.getenv("REPLIT_DEPLOYMENT") == "1"
    CURRENT_ENVIRONMENT = "production" if IS_PRODUCTION else "development"

    # Database - local sqlite file is only acceptable outside production
    DATABASE_URL = os.getenv("DATABASE_URL")
    if not DATABASE_URL and not IS_PRODUCTION:
        DATABASE_URL = "sqlite:///./payments.db"

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # PayPal
    PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET")
    PAYPAL_WEBHOOK_ID = os.getenv("PAYPAL_WEBHOOK_ID")
    PAYPAL_MODE = os.getenv("PAYPAL_MODE", "sandbox").lower()
    PAYPAL_API_BASE = (
        "https://api-m.paypal.com" if PAYPAL_MODE == "live" else "https://api-m.sandbox.paypal.com"
    )

    # Razorpay
    RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
    RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
    RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
    RAZORPAY_API_BASE = "https://api.razorpay.com/v1"

    # Paystack
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_API_BASE = "https://api.paystack.co"

    # MercadoPago
    MERCADOPAGO_ACCESS_TOKEN = os.getenv("MERCADOPAGO_ACCESS_TOKEN")
    MERCADOPAGO_WEBHOOK_SECRET = os.getenv("MERCADOPAGO_WEBHOOK_SECRET")
    MERCADOPAGO_API_BASE = "https://api.mercadopago.com"

    # Outbound gateway HTTP calls
    GATEWAY_HTTP_TIMEOUT_SECONDS = _int_env("GATEWAY_HTTP_TIMEOUT_SECONDS", 30)

    # Webhook retry scheduler
    WEBHOOK_RETRY_SCHEDULER_ENABLED = os.getenv("WEBHOOK_RETRY_SCHEDULER_ENABLED", "true").lower() == "true"
    WEBHOOK_RETRY_SCHEDULER_INTERVAL_MINUTES = _int_env("WEBHOOK_RETRY_SCHEDULER_INTERVAL_MINUTES", 5)
    WEBHOOK_RETRY_BATCH_SIZE = _int_env("WEBHOOK_RETRY_BATCH_SIZE", 50)

    # Admin-configurable settings are cached for this long
    SETTINGS_CACHE_TTL_SECONDS = _int_env("SETTINGS_CACHE_TTL_SECONDS", 300)

    # Admin access and alerting
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")
    ADMIN_ALERT_EMAILS = _list_env("ADMIN_ALERT_EMAILS")

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def gateway_secrets_status(cls) -> dict:
        """Report which gateways have webhook verification secrets configured"""
        return {
            "stripe": bool(cls.STRIPE_WEBHOOK_SECRET),
            "paypal": bool(cls.PAYPAL_WEBHOOK_ID and cls.PAYPAL_CLIENT_ID and cls.PAYPAL_CLIENT_SECRET),
            "razorpay": bool(cls.RAZORPAY_WEBHOOK_SECRET),
            "paystack": bool(cls.PAYSTACK_SECRET_KEY),
            "mercadopago": bool(cls.MERCADOPAGO_WEBHOOK_SECRET),
        }
