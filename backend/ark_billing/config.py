# backend/ark_billing/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/ark_billing.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///ark_billing.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    COMPANY_NAME = os.environ.get("COMPANY_NAME", "ARK Dumpster")

    # Payment numbering: PAY-000001, monotonic per tenant
    BILLING_TENANT_CODE = os.environ.get("BILLING_TENANT_CODE", "ARK")
    PAYMENT_NUMBER_PREFIX = os.environ.get("PAYMENT_NUMBER_PREFIX", "PAY")

    # 800 bps = 8% sales tax on rentals
    PAYMENT_TAX_RATE_BPS = _env_int("PAYMENT_TAX_RATE_BPS", 800)

    # FULL_REFUND_ONLY: partial refunds keep the current status
    # ANY_REFUND: any refund moves the payment to REFUNDED
    PAYMENT_REFUND_POLICY = os.environ.get("PAYMENT_REFUND_POLICY", "FULL_REFUND_ONLY")

    PAYMENT_LIST_MAX_LIMIT = _env_int("PAYMENT_LIST_MAX_LIMIT", 100)

    # "square" in production, "mock" for local development and tests
    INVOICE_PROVIDER = os.environ.get("INVOICE_PROVIDER", "mock")
    PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10"))

    SQUARE_ACCESS_TOKEN = os.environ.get("SQUARE_ACCESS_TOKEN")
    SQUARE_ENVIRONMENT = os.environ.get("SQUARE_ENVIRONMENT", "sandbox")
    SQUARE_LOCATION_ID = os.environ.get("SQUARE_LOCATION_ID")
    SQUARE_API_VERSION = os.environ.get("SQUARE_API_VERSION", "2024-10-17")
    SQUARE_WEBHOOK_SIGNATURE_KEY = os.environ.get("SQUARE_WEBHOOK_SIGNATURE_KEY", "dev-webhook-key")
    # Must match the notification URL registered with Square byte for byte
    SQUARE_WEBHOOK_URL = os.environ.get(
        "SQUARE_WEBHOOK_URL",
        "http://localhost:5001/api/webhooks/square",
    )
