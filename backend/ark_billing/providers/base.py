# Overview: Invoice provider interface, shared value types, and webhook signature checks.

"""
Invoice Provider Interface

The lifecycle manager reaches the remote invoicing system only through an
InvoiceProvider. Square and the in-memory mock implement the same contract,
so both run through the exact same lifecycle code path.

WEBHOOK AUTHENTICITY:
    signature = base64(HMAC-SHA256(signature_key, notification_url + raw_body))
    sent in the x-square-hmacsha256-signature header.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import date

from ..errors import SignatureError, ValidationError
from ..services.payment_states import (
    STATUS_CANCELED,
    STATUS_DRAFT,
    STATUS_FAILED,
    STATUS_PAID,
    STATUS_PARTIALLY_PAID,
    STATUS_REFUNDED,
    STATUS_SENT,
)


SIGNATURE_HEADER = "x-square-hmacsha256-signature"

# Provider invoice status -> local payment status
PROVIDER_STATUS_MAP = {
    "DRAFT": STATUS_DRAFT,
    "UNPAID": STATUS_SENT,
    "SCHEDULED": STATUS_SENT,
    "PAYMENT_PENDING": STATUS_SENT,
    "PARTIALLY_PAID": STATUS_PARTIALLY_PAID,
    "PAID": STATUS_PAID,
    "PARTIALLY_REFUNDED": STATUS_PARTIALLY_PAID,
    "REFUNDED": STATUS_REFUNDED,
    "CANCELED": STATUS_CANCELED,
    "FAILED": STATUS_FAILED,
}

# Local delivery method -> provider delivery method
PROVIDER_DELIVERY_METHODS = {
    "EMAIL": "EMAIL",
    "SMS": "SMS",
    "MANUAL": "SHARE_MANUALLY",
    "SHARE_MANUALLY": "SHARE_MANUALLY",
}


@dataclass(frozen=True)
class InvoiceLine:
    name: str
    quantity: int
    unit_price: int
    description: str | None = None


@dataclass(frozen=True)
class InvoicePayment:
    """
    Detached copy of the payment fields a provider needs to build an invoice.

    Taken before the read transaction is released, so provider calls never
    touch the ORM session.
    """
    id: int
    payment_number: str
    subtotal_amount: int
    tax_amount: int
    total_amount: int
    due_date: date | None = None
    description: str | None = None
    line_items: tuple[InvoiceLine, ...] = ()

    @classmethod
    def from_model(cls, payment) -> "InvoicePayment":
        return cls(
            id=payment.id,
            payment_number=payment.payment_number,
            subtotal_amount=payment.subtotal_amount,
            tax_amount=payment.tax_amount,
            total_amount=payment.total_amount,
            due_date=payment.due_date,
            description=payment.description,
            line_items=tuple(
                InvoiceLine(
                    name=li.name,
                    quantity=li.quantity,
                    unit_price=li.unit_price,
                    description=li.description,
                )
                for li in payment.line_items
            ),
        )


@dataclass
class InvoiceRequest:
    """Caller options for creating or sending a remote invoice."""
    due_date: date | None = None
    delivery_method: str = "EMAIL"
    message: str | None = None
    custom_fields: list[dict] = field(default_factory=list)


@dataclass
class InvoiceSnapshot:
    """Remote invoice state as last reported by the provider."""
    external_id: str
    status: str
    public_url: str | None = None
    version: int | None = None
    customer_id: str | None = None
    location_id: str | None = None
    invoice_number: str | None = None
    paid_amount: int | None = None

    @property
    def local_status(self) -> str | None:
        return PROVIDER_STATUS_MAP.get((self.status or "").upper())

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WebhookEnvelope:
    event_type: str
    event_id: str
    payload: dict
    created_at: str | None = None


def compute_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(signature_key: str, notification_url: str, body: bytes, signature: str | None) -> bool:
    if not signature or not signature_key:
        return False
    expected = compute_signature(signature_key, notification_url, body)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().encode("ascii", "ignore"))


class InvoiceProvider(ABC):
    """
    Contract every invoicing backend implements.

    Implementations raise AdapterError (ProviderTimeoutError on timeout)
    for remote failures and never touch the local ledger.
    """

    name = "base"
    # Webhook log source for events this provider delivers
    source = "SQUARE"

    def __init__(self, *, webhook_signature_key: str, webhook_url: str):
        self.webhook_signature_key = webhook_signature_key
        self.webhook_url = webhook_url

    @abstractmethod
    def create_invoice(self, payment: InvoicePayment, order, request: InvoiceRequest) -> InvoiceSnapshot:
        """Create a DRAFT remote invoice for a payment."""

    @abstractmethod
    def send_invoice(self, external_id: str, delivery_method: str) -> InvoiceSnapshot:
        """Publish a remote invoice. Must not re-publish one already sent."""

    @abstractmethod
    def get_invoice_status(self, external_id: str) -> InvoiceSnapshot:
        ...

    @abstractmethod
    def cancel_invoice(self, external_id: str, reason: str | None = None, *, version: int | None = None) -> InvoiceSnapshot:
        ...

    def verify_and_parse_webhook(self, raw_body: bytes, signature: str | None) -> WebhookEnvelope:
        """
        Authenticate a webhook delivery and extract its envelope.

        Raises SignatureError for a missing or invalid signature, and
        ValidationError for an authentic body that is not a JSON event.
        """
        if not signature:
            raise SignatureError("Missing webhook signature")
        if not verify_signature(self.webhook_signature_key, self.webhook_url, raw_body, signature):
            raise SignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body is not a JSON object")

        event_type = payload.get("type")
        event_id = payload.get("event_id")
        if not event_type or not event_id:
            raise ValidationError("Webhook body is missing type or event_id")

        return WebhookEnvelope(
            event_type=str(event_type),
            event_id=str(event_id),
            payload=payload,
            created_at=payload.get("created_at"),
        )

    def close(self) -> None:
        pass
