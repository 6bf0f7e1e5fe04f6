# Overview: Builds the configured invoice provider.

from __future__ import annotations

from .base import InvoiceProvider
from .mock import MockInvoiceProvider
from .square import SquareInvoiceProvider


def build_invoice_provider(config) -> InvoiceProvider:
    """INVOICE_PROVIDER selects "square" or "mock"; both verify webhooks with the same key."""
    kind = (config.get("INVOICE_PROVIDER") or "mock").strip().lower()

    if kind == "mock":
        webhook_url = config["SQUARE_WEBHOOK_URL"]
        return MockInvoiceProvider(
            webhook_signature_key=config["SQUARE_WEBHOOK_SIGNATURE_KEY"],
            webhook_url=webhook_url,
            public_base_url=webhook_url.split("/api/", 1)[0],
        )

    if kind == "square":
        return SquareInvoiceProvider(
            access_token=config.get("SQUARE_ACCESS_TOKEN"),
            location_id=config.get("SQUARE_LOCATION_ID"),
            webhook_signature_key=config["SQUARE_WEBHOOK_SIGNATURE_KEY"],
            webhook_url=config["SQUARE_WEBHOOK_URL"],
            environment=config.get("SQUARE_ENVIRONMENT", "sandbox"),
            api_version=config.get("SQUARE_API_VERSION", "2024-10-17"),
            timeout=float(config.get("PROVIDER_TIMEOUT_SECONDS", 10)),
            company_name=config.get("COMPANY_NAME", "ARK Dumpster"),
        )

    raise ValueError(f"Unknown INVOICE_PROVIDER '{kind}'. Must be one of: mock, square")
