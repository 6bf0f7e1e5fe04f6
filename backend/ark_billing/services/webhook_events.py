# Overview: Typed parsing of provider webhook payloads, keyed by event type.

"""
Webhook Event Parsing

Provider payloads are loosely shaped JSON. Each known event type gets a
narrow parser producing a frozen dataclass; anything else becomes
UnknownEvent and is stored IGNORED, never guessed at.

PAYLOAD SHAPE (Square):
    {
      "type": "invoice.payment_made",
      "event_id": "...",
      "data": {
        "id": "<invoice id>",
        "object": {
          "invoice": {"id", "version", "status", "public_url",
                      "payment_requests": [{"total_completed_amount_money": {"amount": 20000}}]},
          "payment": {"id": "..."}
        }
      }
    }

Keys are snake_case on the wire; camelCase is accepted for payloads built
by SDK-style clients.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Union

from ..errors import ValidationError


EVENT_INVOICE_SENT = "invoice.sent"
EVENT_INVOICE_VIEWED = "invoice.viewed"
EVENT_INVOICE_PAYMENT_MADE = "invoice.payment_made"
EVENT_INVOICE_CANCELED = "invoice.canceled"
EVENT_INVOICE_UPDATED = "invoice.updated"
EVENT_INVOICE_CHARGE_FAILED = "invoice.scheduled_charge_failed"


@dataclass(frozen=True)
class InvoiceEvent:
    kind: ClassVar[str] = ""

    event_id: str
    invoice_id: str
    invoice_status: str | None = None
    invoice_version: int | None = None
    public_url: str | None = None


@dataclass(frozen=True)
class InvoiceSent(InvoiceEvent):
    kind: ClassVar[str] = EVENT_INVOICE_SENT


@dataclass(frozen=True)
class InvoiceViewed(InvoiceEvent):
    kind: ClassVar[str] = EVENT_INVOICE_VIEWED


@dataclass(frozen=True)
class InvoicePaymentMade(InvoiceEvent):
    """cumulative_paid_amount is the provider's running total, in cents."""
    kind: ClassVar[str] = EVENT_INVOICE_PAYMENT_MADE

    cumulative_paid_amount: int = 0
    provider_payment_id: str | None = None


@dataclass(frozen=True)
class InvoiceCanceled(InvoiceEvent):
    kind: ClassVar[str] = EVENT_INVOICE_CANCELED


@dataclass(frozen=True)
class InvoiceUpdated(InvoiceEvent):
    kind: ClassVar[str] = EVENT_INVOICE_UPDATED


@dataclass(frozen=True)
class InvoiceChargeFailed(InvoiceEvent):
    kind: ClassVar[str] = EVENT_INVOICE_CHARGE_FAILED

    failure_reason: str | None = None


@dataclass(frozen=True)
class UnknownEvent:
    kind: ClassVar[str] = "unknown"

    event_type: str
    event_id: str
    invoice_id: str | None = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


WebhookEvent = Union[
    InvoiceSent,
    InvoiceViewed,
    InvoicePaymentMade,
    InvoiceCanceled,
    InvoiceUpdated,
    InvoiceChargeFailed,
    UnknownEvent,
]


# =============================================================================
# PAYLOAD HELPERS
# =============================================================================

def _pick(obj: dict, *keys: str) -> Any:
    for key in keys:
        if key in obj and obj[key] is not None:
            return obj[key]
    return None


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _invoice_object(payload: dict) -> dict:
    data = _as_dict(payload.get("data"))
    return _as_dict(_as_dict(data.get("object")).get("invoice"))


def extract_invoice_id(payload: dict) -> str | None:
    """Invoice id embedded in a payload, from the invoice object or data.id."""
    invoice = _invoice_object(_as_dict(payload))
    invoice_id = _pick(invoice, "id") or _pick(_as_dict(_as_dict(payload).get("data")), "id")
    return str(invoice_id) if invoice_id else None


def _parse_amount(value: Any, name: str) -> int:
    # Square sends amounts as JSON integers; SDK-style clients as digit strings
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer amount of cents")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ValidationError(f"{name} must be an integer amount of cents")
    if amount < 0:
        raise ValidationError(f"{name} must be >= 0")
    return amount


def _parse_version(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _common_fields(event_id: str, payload: dict) -> dict:
    invoice_id = extract_invoice_id(payload)
    if not invoice_id:
        raise ValidationError("webhook payload has no invoice id")
    invoice = _invoice_object(payload)
    status = _pick(invoice, "status")
    return {
        "event_id": event_id,
        "invoice_id": invoice_id,
        "invoice_status": str(status).upper() if status else None,
        "invoice_version": _parse_version(_pick(invoice, "version")),
        "public_url": _pick(invoice, "public_url", "publicUrl"),
    }


def _completed_amount(invoice: dict) -> int:
    requests = _pick(invoice, "payment_requests", "paymentRequests")
    if not isinstance(requests, list) or not requests:
        raise ValidationError("invoice.payment_made has no payment_requests")
    total = 0
    for request in requests:
        money = _as_dict(_pick(_as_dict(request), "total_completed_amount_money", "totalCompletedAmountMoney"))
        amount = _pick(money, "amount")
        if amount is not None:
            total += _parse_amount(amount, "total_completed_amount_money.amount")
    return total


def _parse_payment_made(event_id: str, payload: dict) -> InvoicePaymentMade:
    invoice = _invoice_object(payload)
    payment = _as_dict(_as_dict(_as_dict(payload.get("data")).get("object")).get("payment"))
    return InvoicePaymentMade(
        **_common_fields(event_id, payload),
        cumulative_paid_amount=_completed_amount(invoice),
        provider_payment_id=_pick(payment, "id"),
    )


def _parse_charge_failed(event_id: str, payload: dict) -> InvoiceChargeFailed:
    data_object = _as_dict(_as_dict(payload.get("data")).get("object"))
    reason = _pick(data_object, "failure_reason", "reason") or "Scheduled charge failed"
    return InvoiceChargeFailed(**_common_fields(event_id, payload), failure_reason=str(reason))


def _simple(cls) -> Callable[[str, dict], InvoiceEvent]:
    def parse(event_id: str, payload: dict):
        return cls(**_common_fields(event_id, payload))
    return parse


EVENT_PARSERS: dict[str, Callable[[str, dict], WebhookEvent]] = {
    EVENT_INVOICE_SENT: _simple(InvoiceSent),
    EVENT_INVOICE_VIEWED: _simple(InvoiceViewed),
    EVENT_INVOICE_PAYMENT_MADE: _parse_payment_made,
    EVENT_INVOICE_CANCELED: _simple(InvoiceCanceled),
    EVENT_INVOICE_UPDATED: _simple(InvoiceUpdated),
    EVENT_INVOICE_CHARGE_FAILED: _parse_charge_failed,
}


def parse_event(event_type: str, event_id: str, payload: dict) -> WebhookEvent:
    """
    Parse a verified webhook payload into a typed event.

    Unknown event types return UnknownEvent. A known event type with a
    malformed body raises ValidationError.
    """
    payload = _as_dict(payload)
    parser = EVENT_PARSERS.get(event_type)
    if parser is None:
        return UnknownEvent(
            event_type=event_type or "unknown",
            event_id=event_id,
            invoice_id=extract_invoice_id(payload),
            raw=payload,
        )
    return parser(event_id, payload)
