# Overview: Square Invoices API adapter over httpx.

"""
Square Invoice Provider

FLOW (create):
    customer -> order -> invoice (DRAFT)
Every create call carries an idempotency key derived from the payment number,
so a retried create after a timeout returns the object Square already made
instead of a second customer-facing invoice.

FLOW (send):
    read invoice -> (update delivery method) -> publish with current version
Only a DRAFT is published. An invoice already published is returned as-is.

Amounts are integer cents both locally and on Square's side.
"""

from __future__ import annotations

import logging
from datetime import timedelta

import httpx

from ..errors import AdapterError, ProviderTimeoutError
from ark_billing.time_utils import utctoday
from .base import (
    PROVIDER_DELIVERY_METHODS,
    InvoicePayment,
    InvoiceProvider,
    InvoiceRequest,
    InvoiceSnapshot,
)

logger = logging.getLogger(__name__)


SQUARE_BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}

CURRENCY = "USD"
DEFAULT_DUE_DAYS = 30


class SquareInvoiceProvider(InvoiceProvider):
    name = "square"

    def __init__(
        self,
        *,
        access_token: str,
        location_id: str,
        webhook_signature_key: str,
        webhook_url: str,
        environment: str = "sandbox",
        api_version: str = "2024-10-17",
        timeout: float = 10.0,
        company_name: str = "ARK Dumpster",
        client: httpx.Client | None = None,
    ):
        super().__init__(webhook_signature_key=webhook_signature_key, webhook_url=webhook_url)
        if not access_token:
            raise ValueError("SQUARE_ACCESS_TOKEN is required for the square invoice provider")
        if not location_id:
            raise ValueError("SQUARE_LOCATION_ID is required for the square invoice provider")
        if environment not in SQUARE_BASE_URLS:
            raise ValueError(f"Unknown SQUARE_ENVIRONMENT '{environment}'")

        self.access_token = access_token
        self.location_id = location_id
        self.base_url = SQUARE_BASE_URLS[environment]
        self.api_version = api_version
        self.company_name = company_name
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # =========================================================================
    # HTTP
    # =========================================================================

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Square-Version": self.api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, *, json: dict | None = None, params: dict | None = None) -> dict:
        """
        Call the Square API and return the decoded body.

        Raises ProviderTimeoutError on timeout and AdapterError for network
        failures and 4xx/5xx responses (carrying Square's first error code).
        """
        url = f"{self.base_url}{path}"
        try:
            response = self._client.request(method, url, json=json, params=params, headers=self._headers())
        except httpx.TimeoutException as exc:
            logger.warning("Square request timed out: %s %s", method, path)
            raise ProviderTimeoutError(f"Square request timed out: {method} {path}", code="TIMEOUT") from exc
        except httpx.RequestError as exc:
            logger.warning("Square request failed: %s %s: %s", method, path, exc)
            raise AdapterError(f"Square request failed: {exc}", code="NETWORK_ERROR") from exc

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}

        if response.status_code >= 400:
            errors = data.get("errors") if isinstance(data, dict) else None
            first = errors[0] if errors else {}
            detail = first.get("detail") or response.text or f"HTTP {response.status_code}"
            logger.warning("Square API error %s on %s %s: %s", response.status_code, method, path, detail)
            raise AdapterError(
                f"Square API Error: {detail}",
                code=first.get("code"),
                status_code=response.status_code,
            )
        return data if isinstance(data, dict) else {}

    # =========================================================================
    # INVOICE PROVIDER
    # =========================================================================

    def create_invoice(self, payment: InvoicePayment, order, request: InvoiceRequest) -> InvoiceSnapshot:
        reference = payment.payment_number

        customer = self._request("POST", "/v2/customers", json={
            "idempotency_key": f"{reference}-customer",
            "given_name": order.first_name,
            "family_name": order.last_name or None,
            "email_address": order.email,
            "phone_number": order.phone or None,
            "reference_id": order.order_number,
            "note": f"{self.company_name} Order {order.order_number}",
        }).get("customer") or {}
        customer_id = customer.get("id")
        if not customer_id:
            raise AdapterError("Square did not return a customer id", code="INVALID_RESPONSE")

        square_order = self._request("POST", "/v2/orders", json={
            "idempotency_key": f"{reference}-order",
            "order": {
                "location_id": self.location_id,
                "customer_id": customer_id,
                "reference_id": reference,
                "line_items": self._order_line_items(payment),
            },
        }).get("order") or {}
        if not square_order.get("id"):
            raise AdapterError("Square did not return an order id", code="INVALID_RESPONSE")

        due_date = request.due_date or payment.due_date or utctoday() + timedelta(days=DEFAULT_DUE_DAYS)
        description = order.internal_notes or f"Dumpster rental service for {order.customer_name}"
        if request.message:
            description = request.message

        invoice_body = {
            "location_id": self.location_id,
            "order_id": square_order["id"],
            "primary_recipient": {"customer_id": customer_id},
            "payment_requests": [{
                "request_type": "BALANCE",
                "due_date": due_date.isoformat(),
            }],
            "delivery_method": PROVIDER_DELIVERY_METHODS.get(request.delivery_method, "EMAIL"),
            "invoice_number": f"ARK-{order.order_number}-{payment.id}",
            "title": f"{self.company_name} Service - Order {order.order_number}",
            "description": description[:65536],
            "accepted_payment_methods": {
                "card": True,
                "bank_account": False,
                "square_gift_card": False,
                "buy_now_pay_later": False,
            },
        }
        if request.custom_fields:
            invoice_body["custom_fields"] = [
                {"label": f.get("label"), "value": f.get("value"), "placement": "ABOVE_LINE_ITEMS"}
                for f in request.custom_fields
            ]

        invoice = self._request("POST", "/v2/invoices", json={
            "idempotency_key": f"{reference}-invoice",
            "invoice": invoice_body,
        }).get("invoice") or {}
        if not invoice.get("id"):
            raise AdapterError("Square did not return an invoice id", code="INVALID_RESPONSE")

        logger.info("Square invoice %s created for payment %s", invoice["id"], reference)
        return self._snapshot(invoice)

    def send_invoice(self, external_id: str, delivery_method: str) -> InvoiceSnapshot:
        invoice = self._get(external_id)
        if invoice.get("status") != "DRAFT":
            logger.info("Square invoice %s already published (%s)", external_id, invoice.get("status"))
            return self._snapshot(invoice)

        wanted = PROVIDER_DELIVERY_METHODS.get(delivery_method, "EMAIL")
        if invoice.get("delivery_method") != wanted:
            invoice = self._request("PUT", f"/v2/invoices/{external_id}", json={
                "idempotency_key": f"{external_id}-delivery-{invoice.get('version')}",
                "invoice": {"version": invoice.get("version"), "delivery_method": wanted},
            }).get("invoice") or invoice

        published = self._request("POST", f"/v2/invoices/{external_id}/publish", json={
            "idempotency_key": f"{external_id}-publish-{invoice.get('version')}",
            "version": invoice.get("version"),
        }).get("invoice")
        if not published:
            raise AdapterError("Square did not return the published invoice", code="INVALID_RESPONSE")
        return self._snapshot(published)

    def get_invoice_status(self, external_id: str) -> InvoiceSnapshot:
        return self._snapshot(self._get(external_id))

    def cancel_invoice(self, external_id: str, reason: str | None = None, *, version: int | None = None) -> InvoiceSnapshot:
        invoice = self._get(external_id)
        status = invoice.get("status")
        current_version = invoice.get("version") if invoice.get("version") is not None else version

        if status == "CANCELED":
            return self._snapshot(invoice)

        if status == "DRAFT":
            # Square only deletes drafts; a draft never reached the customer
            self._request("DELETE", f"/v2/invoices/{external_id}", params={"version": current_version})
            snapshot = self._snapshot(invoice)
            snapshot.status = "CANCELED"
            return snapshot

        canceled = self._request("POST", f"/v2/invoices/{external_id}/cancel", json={
            "version": current_version,
        }).get("invoice")
        if not canceled:
            raise AdapterError("Square did not return the canceled invoice", code="INVALID_RESPONSE")
        logger.info("Square invoice %s canceled: %s", external_id, reason or "no reason given")
        return self._snapshot(canceled)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _get(self, external_id: str) -> dict:
        invoice = self._request("GET", f"/v2/invoices/{external_id}").get("invoice")
        if not invoice:
            raise AdapterError(f"Square invoice {external_id} not found", code="NOT_FOUND", status_code=404)
        return invoice

    def _order_line_items(self, payment) -> list[dict]:
        items = [
            {
                "name": li.name,
                "quantity": str(li.quantity),
                "note": li.description or None,
                "base_price_money": {"amount": li.unit_price, "currency": CURRENCY},
            }
            for li in payment.line_items
        ]
        if not items:
            items.append({
                "name": payment.description or "Dumpster Rental Service",
                "quantity": "1",
                "base_price_money": {"amount": payment.subtotal_amount, "currency": CURRENCY},
            })
        # Tax as its own line so Square's total equals ours to the cent
        if payment.tax_amount:
            items.append({
                "name": "Sales Tax",
                "quantity": "1",
                "base_price_money": {"amount": payment.tax_amount, "currency": CURRENCY},
            })
        return items

    def _snapshot(self, invoice: dict) -> InvoiceSnapshot:
        paid = 0
        for request in invoice.get("payment_requests") or []:
            money = request.get("total_completed_amount_money") or {}
            paid += int(money.get("amount") or 0)
        return InvoiceSnapshot(
            external_id=invoice.get("id"),
            status=invoice.get("status") or "UNKNOWN",
            public_url=invoice.get("public_url"),
            version=invoice.get("version"),
            customer_id=(invoice.get("primary_recipient") or {}).get("customer_id"),
            location_id=invoice.get("location_id") or self.location_id,
            invoice_number=invoice.get("invoice_number"),
            paid_amount=paid,
        )
