# Overview: In-memory invoice provider for local development and tests.

from __future__ import annotations

import itertools
import json
import logging
import threading
import uuid

from ..errors import AdapterError, NotFoundError
from ark_billing.time_utils import to_utc_z, utcnow
from .base import (
    PROVIDER_DELIVERY_METHODS,
    InvoicePayment,
    InvoiceProvider,
    InvoiceRequest,
    InvoiceSnapshot,
    compute_signature,
)

logger = logging.getLogger(__name__)


class MockInvoiceProvider(InvoiceProvider):
    """
    Square-shaped invoices kept in a dict.

    Statuses follow Square's names (DRAFT, UNPAID, PARTIALLY_PAID, PAID,
    CANCELED) and every mutation bumps the invoice version the same way.
    Webhooks are signed with the configured key, so they pass the same
    verification as real deliveries.

    Failure injection: fail_next("create_invoice", AdapterError(...)) makes
    the next call of that operation raise instead of running.
    """

    name = "mock"

    def __init__(
        self,
        *,
        webhook_signature_key: str,
        webhook_url: str,
        public_base_url: str = "http://localhost:5001",
        location_id: str = "MOCK_LOCATION",
    ):
        super().__init__(webhook_signature_key=webhook_signature_key, webhook_url=webhook_url)
        self.public_base_url = public_base_url.rstrip("/")
        self.location_id = location_id
        self.invoices: dict[str, dict] = {}
        self.calls: list[tuple[str, str | None]] = []
        self._by_reference: dict[str, str] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # =========================================================================
    # FAILURE INJECTION
    # =========================================================================

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        self._failures.setdefault(operation, []).append(
            error or AdapterError(f"Mock {operation} failure", code="MOCK_FAILURE", status_code=500)
        )

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # =========================================================================
    # INVOICE PROVIDER
    # =========================================================================

    def create_invoice(self, payment: InvoicePayment, order, request: InvoiceRequest) -> InvoiceSnapshot:
        self.calls.append(("create_invoice", payment.payment_number))
        self._maybe_fail("create_invoice")

        with self._lock:
            # Same idempotency rule as Square: one invoice per payment number
            existing_id = self._by_reference.get(payment.payment_number)
            if existing_id:
                return self._snapshot(self.invoices[existing_id])

            invoice_id = f"inv_mock_{next(self._ids):06d}"
            invoice = {
                "id": invoice_id,
                "version": 0,
                "status": "DRAFT",
                "reference": payment.payment_number,
                "location_id": self.location_id,
                "customer_id": f"cust_mock_{order.id}",
                "invoice_number": f"ARK-{order.order_number}-{payment.id}",
                "title": f"ARK Dumpster Service - Order {order.order_number}",
                "public_url": f"{self.public_base_url}/dev/mock-square-invoice/{invoice_id}",
                "delivery_method": PROVIDER_DELIVERY_METHODS.get(request.delivery_method, "EMAIL"),
                "due_date": request.due_date.isoformat() if request.due_date else None,
                "total_amount": payment.total_amount,
                "paid_amount": 0,
                "custom_fields": list(request.custom_fields or []),
                "created_at": to_utc_z(utcnow()),
            }
            self.invoices[invoice_id] = invoice
            self._by_reference[payment.payment_number] = invoice_id

        logger.info("Mock invoice %s created for payment %s", invoice_id, payment.payment_number)
        return self._snapshot(invoice)

    def send_invoice(self, external_id: str, delivery_method: str) -> InvoiceSnapshot:
        self.calls.append(("send_invoice", external_id))
        self._maybe_fail("send_invoice")

        with self._lock:
            invoice = self._require(external_id)
            if invoice["status"] == "CANCELED":
                raise AdapterError(f"Invoice {external_id} is canceled", code="INVOICE_CANCELED", status_code=400)
            if invoice["status"] == "DRAFT":
                invoice["status"] = "UNPAID"
                invoice["delivery_method"] = PROVIDER_DELIVERY_METHODS.get(delivery_method, "EMAIL")
                invoice["version"] += 1
            return self._snapshot(invoice)

    def get_invoice_status(self, external_id: str) -> InvoiceSnapshot:
        self.calls.append(("get_invoice_status", external_id))
        self._maybe_fail("get_invoice_status")
        with self._lock:
            return self._snapshot(self._require(external_id))

    def cancel_invoice(self, external_id: str, reason: str | None = None, *, version: int | None = None) -> InvoiceSnapshot:
        self.calls.append(("cancel_invoice", external_id))
        self._maybe_fail("cancel_invoice")

        with self._lock:
            invoice = self._require(external_id)
            if invoice["status"] in ("PAID", "REFUNDED"):
                raise AdapterError(
                    f"Invoice {external_id} cannot be canceled in status {invoice['status']}",
                    code="INVALID_STATE",
                    status_code=400,
                )
            if invoice["status"] != "CANCELED":
                invoice["status"] = "CANCELED"
                invoice["cancel_reason"] = reason
                invoice["version"] += 1
            return self._snapshot(invoice)

    # =========================================================================
    # SIMULATION (drives the provider side of the flow)
    # =========================================================================

    def record_payment(self, external_id: str, amount: int) -> InvoiceSnapshot:
        """Apply a customer payment of amount cents to a published invoice."""
        with self._lock:
            invoice = self._require(external_id)
            invoice["paid_amount"] += amount
            invoice["status"] = "PAID" if invoice["paid_amount"] >= invoice["total_amount"] else "PARTIALLY_PAID"
            invoice["version"] += 1
            return self._snapshot(invoice)

    def build_webhook(self, event_type: str, external_id: str, *, event_id: str | None = None) -> tuple[bytes, str]:
        """Signed Square-shaped webhook body for the invoice's current state."""
        with self._lock:
            invoice = self._require(external_id)
            payload = {
                "merchant_id": "MOCK_MERCHANT",
                "type": event_type,
                "event_id": event_id or str(uuid.uuid4()),
                "created_at": to_utc_z(utcnow()),
                "data": {
                    "type": "invoice",
                    "id": invoice["id"],
                    "object": {
                        "invoice": {
                            "id": invoice["id"],
                            "version": invoice["version"],
                            "status": invoice["status"],
                            "public_url": invoice["public_url"],
                            "invoice_number": invoice["invoice_number"],
                            "payment_requests": [
                                {
                                    "request_type": "BALANCE",
                                    "total_completed_amount_money": {
                                        "amount": invoice["paid_amount"],
                                        "currency": "USD",
                                    },
                                }
                            ],
                        }
                    },
                },
            }
        body = json.dumps(payload).encode("utf-8")
        return body, compute_signature(self.webhook_signature_key, self.webhook_url, body)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _require(self, external_id: str) -> dict:
        invoice = self.invoices.get(external_id)
        if invoice is None:
            raise AdapterError(f"Invoice {external_id} not found", code="NOT_FOUND", status_code=404)
        return invoice

    def get_invoice(self, external_id: str) -> dict:
        invoice = self.invoices.get(external_id)
        if invoice is None:
            raise NotFoundError(f"Mock invoice {external_id} not found")
        return dict(invoice)

    @staticmethod
    def _snapshot(invoice: dict) -> InvoiceSnapshot:
        return InvoiceSnapshot(
            external_id=invoice["id"],
            status=invoice["status"],
            public_url=invoice["public_url"],
            version=invoice["version"],
            customer_id=invoice["customer_id"],
            location_id=invoice["location_id"],
            invoice_number=invoice["invoice_number"],
            paid_amount=invoice["paid_amount"],
        )
