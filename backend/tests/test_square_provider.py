"""
Square adapter tests against a scripted Square API (httpx.MockTransport).

No network: every request is recorded and answered by a route table.
"""

import json
from datetime import date
from types import SimpleNamespace

import httpx
import pytest

from ark_billing.errors import AdapterError, ProviderTimeoutError, SignatureError
from ark_billing.providers.base import InvoiceLine, InvoicePayment, InvoiceRequest, compute_signature
from ark_billing.providers.factory import build_invoice_provider
from ark_billing.providers.square import SquareInvoiceProvider


WEBHOOK_URL = "https://billing.example.com/api/webhooks/square"


class FakeSquare:
    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, body=None, status=200):
        self.routes[(method, path)] = (status, body or {})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND", "detail": f"No route {key}"}]})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)

    def sent(self, method, path):
        return [
            json.loads(r.content) if r.content else None
            for r in self.requests
            if r.method == method and r.url.path == path
        ]


@pytest.fixture
def square():
    return FakeSquare()


@pytest.fixture
def adapter(square):
    return SquareInvoiceProvider(
        access_token="sq-token",
        location_id="LOC1",
        webhook_signature_key="sig-key",
        webhook_url=WEBHOOK_URL,
        client=httpx.Client(transport=httpx.MockTransport(square)),
    )


def _order():
    return SimpleNamespace(
        id=7,
        order_number="ORD-1001",
        first_name="Dana",
        last_name="Reyes",
        email="dana@example.com",
        phone="555-0100",
        internal_notes=None,
        customer_name="Dana Reyes",
    )


def _payment(line_items=()):
    return InvoicePayment(
        id=3,
        payment_number="PAY-000003",
        subtotal_amount=50000,
        tax_amount=4000,
        total_amount=54000,
        due_date=None,
        description=None,
        line_items=tuple(line_items),
    )


def _invoice(status="DRAFT", version=0, **extra):
    invoice = {
        "id": "inv_sq_1",
        "status": status,
        "version": version,
        "location_id": "LOC1",
        "public_url": "https://squareup.com/pay-invoice/inv_sq_1",
        "invoice_number": "ARK-ORD-1001-3",
        "primary_recipient": {"customer_id": "cust_1"},
        "delivery_method": "EMAIL",
    }
    invoice.update(extra)
    return invoice


class TestCreateInvoice:
    def _script(self, square):
        square.on("POST", "/v2/customers", {"customer": {"id": "cust_1"}})
        square.on("POST", "/v2/orders", {"order": {"id": "sqo_1"}})
        square.on("POST", "/v2/invoices", {"invoice": _invoice()})

    def test_customer_order_invoice_sequence(self, adapter, square):
        self._script(square)

        snapshot = adapter.create_invoice(
            _payment(), _order(),
            InvoiceRequest(due_date=date(2026, 11, 15), delivery_method="SMS"),
        )

        assert [(r.method, r.url.path) for r in square.requests] == [
            ("POST", "/v2/customers"),
            ("POST", "/v2/orders"),
            ("POST", "/v2/invoices"),
        ]
        assert snapshot.external_id == "inv_sq_1"
        assert snapshot.status == "DRAFT"
        assert snapshot.version == 0
        assert snapshot.customer_id == "cust_1"
        assert snapshot.paid_amount == 0

        request = square.requests[0]
        assert request.headers["Authorization"] == "Bearer sq-token"
        assert request.headers["Square-Version"] == "2024-10-17"
        assert request.url.host == "connect.squareupsandbox.com"

    def test_idempotency_keys_follow_payment_number(self, adapter, square):
        self._script(square)
        adapter.create_invoice(_payment(), _order(), InvoiceRequest())

        (customer,) = square.sent("POST", "/v2/customers")
        (order,) = square.sent("POST", "/v2/orders")
        (invoice,) = square.sent("POST", "/v2/invoices")
        assert customer["idempotency_key"] == "PAY-000003-customer"
        assert order["idempotency_key"] == "PAY-000003-order"
        assert invoice["idempotency_key"] == "PAY-000003-invoice"

    def test_tax_is_its_own_line(self, adapter, square):
        self._script(square)
        line = InvoiceLine(name="Dumpster Rental - 20 Yard", quantity=1, unit_price=50000)

        adapter.create_invoice(_payment([line]), _order(), InvoiceRequest())

        (order,) = square.sent("POST", "/v2/orders")
        amounts = [(li["name"], li["base_price_money"]["amount"]) for li in order["order"]["line_items"]]
        assert amounts == [("Dumpster Rental - 20 Yard", 50000), ("Sales Tax", 4000)]
        assert sum(a for _, a in amounts) == 54000

    def test_invoice_body(self, adapter, square):
        self._script(square)

        adapter.create_invoice(_payment(), _order(), InvoiceRequest(
            due_date=date(2026, 11, 15),
            delivery_method="MANUAL",
            custom_fields=[{"label": "Site", "value": "Back lot"}],
        ))

        (body,) = square.sent("POST", "/v2/invoices")
        invoice = body["invoice"]
        assert invoice["order_id"] == "sqo_1"
        assert invoice["delivery_method"] == "SHARE_MANUALLY"
        assert invoice["payment_requests"] == [{"request_type": "BALANCE", "due_date": "2026-11-15"}]
        assert invoice["invoice_number"] == "ARK-ORD-1001-3"
        assert invoice["custom_fields"][0]["label"] == "Site"

    def test_missing_customer_id_is_an_error(self, adapter, square):
        square.on("POST", "/v2/customers", {"customer": {}})
        with pytest.raises(AdapterError) as exc:
            adapter.create_invoice(_payment(), _order(), InvoiceRequest())
        assert exc.value.code == "INVALID_RESPONSE"


class TestSendInvoice:
    def test_publishes_draft_with_current_version(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(version=2)})
        square.on("POST", "/v2/invoices/inv_sq_1/publish", {"invoice": _invoice(status="UNPAID", version=3)})

        snapshot = adapter.send_invoice("inv_sq_1", "EMAIL")

        assert snapshot.status == "UNPAID"
        assert snapshot.local_status == "SENT"
        (publish,) = square.sent("POST", "/v2/invoices/inv_sq_1/publish")
        assert publish["version"] == 2
        assert square.sent("PUT", "/v2/invoices/inv_sq_1") == []

    def test_changes_delivery_method_before_publishing(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(version=0)})
        square.on("PUT", "/v2/invoices/inv_sq_1", {"invoice": _invoice(version=1, delivery_method="SMS")})
        square.on("POST", "/v2/invoices/inv_sq_1/publish", {"invoice": _invoice(status="UNPAID", version=2)})

        adapter.send_invoice("inv_sq_1", "SMS")

        (update,) = square.sent("PUT", "/v2/invoices/inv_sq_1")
        assert update["invoice"] == {"version": 0, "delivery_method": "SMS"}
        (publish,) = square.sent("POST", "/v2/invoices/inv_sq_1/publish")
        assert publish["version"] == 1

    def test_already_published_is_not_republished(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(status="UNPAID", version=1)})

        snapshot = adapter.send_invoice("inv_sq_1", "EMAIL")

        assert snapshot.status == "UNPAID"
        assert [r.method for r in square.requests] == ["GET"]


class TestCancelInvoice:
    def test_draft_is_deleted(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(version=4)})
        square.on("DELETE", "/v2/invoices/inv_sq_1", {})

        snapshot = adapter.cancel_invoice("inv_sq_1", "Duplicate")

        assert snapshot.status == "CANCELED"
        delete = [r for r in square.requests if r.method == "DELETE"][0]
        assert delete.url.params["version"] == "4"

    def test_published_invoice_is_canceled(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(status="UNPAID", version=1)})
        square.on("POST", "/v2/invoices/inv_sq_1/cancel", {"invoice": _invoice(status="CANCELED", version=2)})

        snapshot = adapter.cancel_invoice("inv_sq_1")

        assert snapshot.status == "CANCELED"
        assert snapshot.version == 2
        assert square.sent("POST", "/v2/invoices/inv_sq_1/cancel") == [{"version": 1}]

    def test_already_canceled_is_a_no_op(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(status="CANCELED", version=5)})

        snapshot = adapter.cancel_invoice("inv_sq_1")

        assert snapshot.status == "CANCELED"
        assert len(square.requests) == 1


class TestStatusAndErrors:
    def test_paid_amount_sums_payment_requests(self, adapter, square):
        square.on("GET", "/v2/invoices/inv_sq_1", {"invoice": _invoice(
            status="PARTIALLY_PAID",
            version=3,
            payment_requests=[
                {"total_completed_amount_money": {"amount": 20000, "currency": "USD"}},
                {"total_completed_amount_money": {"amount": 5000, "currency": "USD"}},
            ],
        )})

        snapshot = adapter.get_invoice_status("inv_sq_1")

        assert snapshot.paid_amount == 25000
        assert snapshot.local_status == "PARTIALLY_PAID"

    def test_api_error_carries_square_code(self, adapter, square):
        square.on(
            "GET", "/v2/invoices/inv_sq_1",
            {"errors": [{"category": "INVALID_REQUEST_ERROR", "code": "VERSION_MISMATCH", "detail": "Stale version"}]},
            status=400,
        )

        with pytest.raises(AdapterError) as exc:
            adapter.get_invoice_status("inv_sq_1")

        assert exc.value.code == "VERSION_MISMATCH"
        assert exc.value.status_code == 400
        assert "Stale version" in str(exc.value)

    def test_timeout_maps_to_provider_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        adapter = SquareInvoiceProvider(
            access_token="sq-token",
            location_id="LOC1",
            webhook_signature_key="sig-key",
            webhook_url=WEBHOOK_URL,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(ProviderTimeoutError) as exc:
            adapter.get_invoice_status("inv_sq_1")
        assert exc.value.code == "TIMEOUT"
        assert exc.value.http_status == 504

    def test_connection_error_maps_to_adapter_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        adapter = SquareInvoiceProvider(
            access_token="sq-token",
            location_id="LOC1",
            webhook_signature_key="sig-key",
            webhook_url=WEBHOOK_URL,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(AdapterError) as exc:
            adapter.get_invoice_status("inv_sq_1")
        assert exc.value.code == "NETWORK_ERROR"


class TestWebhookVerification:
    def test_valid_signature(self, adapter):
        body = json.dumps({"type": "invoice.viewed", "event_id": "evt_1", "data": {}}).encode()
        signature = compute_signature("sig-key", WEBHOOK_URL, body)

        envelope = adapter.verify_and_parse_webhook(body, signature)

        assert envelope.event_type == "invoice.viewed"
        assert envelope.event_id == "evt_1"

    def test_signature_is_bound_to_notification_url(self, adapter):
        body = b'{"type": "invoice.viewed", "event_id": "evt_1"}'
        signature = compute_signature("sig-key", "https://elsewhere.example.com/hook", body)

        with pytest.raises(SignatureError):
            adapter.verify_and_parse_webhook(body, signature)

    def test_missing_signature(self, adapter):
        with pytest.raises(SignatureError):
            adapter.verify_and_parse_webhook(b"{}", None)


class TestConfiguration:
    def test_requires_credentials(self):
        with pytest.raises(ValueError):
            SquareInvoiceProvider(access_token="", location_id="LOC1", webhook_signature_key="k", webhook_url=WEBHOOK_URL)
        with pytest.raises(ValueError):
            SquareInvoiceProvider(access_token="t", location_id="LOC1", webhook_signature_key="k",
                                  webhook_url=WEBHOOK_URL, environment="staging")

    def test_factory_builds_square_provider(self):
        provider = build_invoice_provider({
            "INVOICE_PROVIDER": "square",
            "SQUARE_ACCESS_TOKEN": "t",
            "SQUARE_LOCATION_ID": "LOC1",
            "SQUARE_ENVIRONMENT": "production",
            "SQUARE_WEBHOOK_SIGNATURE_KEY": "k",
            "SQUARE_WEBHOOK_URL": WEBHOOK_URL,
        })
        try:
            assert provider.name == "square"
            assert provider.base_url == "https://connect.squareup.com"
        finally:
            provider.close()

    def test_factory_rejects_unknown_provider(self):
        with pytest.raises(ValueError):
            build_invoice_provider({"INVOICE_PROVIDER": "stripe"})
