"""
HTTP tests for the order invoice routes and the payment routes.
"""

from ark_billing.errors import ProviderTimeoutError


class TestOrderInvoiceRoutes:
    def test_create_send_status_cancel(self, client, provider, order):
        response = client.post(f"/api/orders/{order.id}/invoice", json={
            "dueDate": "2026-11-15",
            "deliveryMethod": "EMAIL",
            "customFields": [{"label": "Site", "value": "Back lot"}],
        })
        assert response.status_code == 201
        data = response.get_json()
        assert data["message"] == "Invoice created"
        assert data["payment"]["status"] == "DRAFT"
        assert data["payment"]["total_amount"] == 54000
        assert data["payment"]["total_amount_display"] == "540.00"
        assert data["payment"]["due_date"] == "2026-11-15"
        assert data["payment"]["metadata"]["custom_fields"] == [{"label": "Site", "value": "Back lot"}]
        assert len(data["payment"]["line_items"]) == 1
        invoice_id = data["invoice"]["external_id"]
        assert data["invoice"]["status"] == "DRAFT"

        response = client.post(f"/api/orders/{order.id}/invoice/send", json={"deliveryMethod": "EMAIL"})
        assert response.status_code == 200
        assert response.get_json()["payment"]["status"] == "SENT"
        assert response.get_json()["invoice"]["status"] == "UNPAID"

        provider.record_payment(invoice_id, 20000)
        response = client.get(f"/api/orders/{order.id}/invoice")
        assert response.status_code == 200
        data = response.get_json()
        assert data["invoice"]["status"] == "PARTIALLY_PAID"
        assert data["payment"]["status"] == "PARTIALLY_PAID"
        assert data["payment"]["paid_amount"] == 20000

        response = client.delete(f"/api/orders/{order.id}/invoice?reason=Duplicate")
        assert response.status_code == 200
        data = response.get_json()
        assert data["payment"]["status"] == "CANCELED"
        assert data["message"] == "Invoice canceled"
        assert provider.get_invoice(invoice_id)["status"] == "CANCELED"

    def test_create_is_idempotent_per_order(self, client, provider, order):
        first = client.post(f"/api/orders/{order.id}/invoice", json={})
        second = client.post(f"/api/orders/{order.id}/invoice", json={})

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()["message"] == "Active invoice already exists"
        assert second.get_json()["payment"]["id"] == first.get_json()["payment"]["id"]
        assert len(provider.invoices) == 1

    def test_failed_create_is_retried_on_same_payment(self, client, provider, order):
        provider.fail_next("create_invoice")
        failed = client.post(f"/api/orders/{order.id}/invoice", json={})
        assert failed.status_code == 502
        assert failed.get_json()["code"] == "MOCK_FAILURE"

        retried = client.post(f"/api/orders/{order.id}/invoice", json={})
        assert retried.status_code == 201

        payments = client.get(f"/api/orders/{order.id}/payments").get_json()["payments"]
        assert len(payments) == 1
        assert payments[0]["square_invoice_id"] == retried.get_json()["invoice"]["external_id"]

    def test_provider_timeout_maps_to_504(self, client, provider, order):
        provider.fail_next("create_invoice", ProviderTimeoutError("timed out", code="TIMEOUT"))
        response = client.post(f"/api/orders/{order.id}/invoice", json={})
        assert response.status_code == 504
        assert response.get_json()["code"] == "TIMEOUT"

    def test_send_twice_reports_already_sent(self, client, order):
        client.post(f"/api/orders/{order.id}/invoice", json={})
        client.post(f"/api/orders/{order.id}/invoice/send", json={"deliveryMethod": "SMS"})

        response = client.post(f"/api/orders/{order.id}/invoice/send", json={"deliveryMethod": "SMS"})

        assert response.status_code == 200
        assert response.get_json()["message"] == "Invoice already sent"

    def test_send_requires_delivery_method(self, client, order):
        client.post(f"/api/orders/{order.id}/invoice", json={})
        response = client.post(f"/api/orders/{order.id}/invoice/send", json={})
        assert response.status_code == 400

    def test_bad_inputs(self, client, order):
        assert client.post(f"/api/orders/{order.id}/invoice", json={"dueDate": "next week"}).status_code == 400
        assert client.post(f"/api/orders/{order.id}/invoice", json={"deliveryMethod": "FAX"}).status_code == 400
        assert client.post(f"/api/orders/{order.id}/invoice", json={"customFields": "x"}).status_code == 400

    def test_unknown_order_and_missing_invoice(self, client, order):
        assert client.post("/api/orders/9999/invoice", json={}).status_code == 404
        assert client.get(f"/api/orders/{order.id}/invoice").status_code == 404
        assert client.delete(f"/api/orders/{order.id}/invoice").status_code == 404

    def test_cancel_survives_remote_failure(self, client, provider, order):
        client.post(f"/api/orders/{order.id}/invoice", json={})
        provider.fail_next("cancel_invoice")

        response = client.delete(f"/api/orders/{order.id}/invoice")

        assert response.status_code == 200
        data = response.get_json()
        assert data["payment"]["status"] == "CANCELED"
        assert data["message"] == "Invoice canceled locally; remote cancellation failed"

    def test_new_invoice_after_cancel(self, client, order):
        first = client.post(f"/api/orders/{order.id}/invoice", json={}).get_json()
        client.delete(f"/api/orders/{order.id}/invoice")

        second = client.post(f"/api/orders/{order.id}/invoice", json={})

        assert second.status_code == 201
        assert second.get_json()["payment"]["id"] != first["payment"]["id"]


class TestPaymentRoutes:
    def _invoice(self, client, order):
        client.post(f"/api/orders/{order.id}/invoice", json={"dueDate": "2026-11-15"})
        data = client.post(f"/api/orders/{order.id}/invoice/send", json={"deliveryMethod": "EMAIL"}).get_json()
        return data["payment"]["id"]

    def test_list_and_filter(self, client, order, order_factory):
        payment_id = self._invoice(client, order)
        other = order_factory(order_number="ORD-5001", email="pat@example.com", first_name="Pat")
        client.post("/api/payments", json={"order_id": other.id, "method": "CASH"})

        data = client.get("/api/payments?status=SENT").get_json()
        assert [p["id"] for p in data["payments"]] == [payment_id]

        data = client.get("/api/payments?method=cash,check").get_json()
        assert data["total"] == 1
        assert data["payments"][0]["method"] == "CASH"

        data = client.get("/api/payments?search=pat@&limit=1&page=1").get_json()
        assert data["total"] == 1
        assert data["has_more"] is False

        assert client.get("/api/payments?page=abc").status_code == 400

    def test_detail_includes_children(self, client, order):
        payment_id = self._invoice(client, order)

        payment = client.get(f"/api/payments/{payment_id}").get_json()["payment"]

        assert payment["payment_number"] == "PAY-000001"
        assert len(payment["line_items"]) == 1
        assert payment["transactions"] == []
        assert payment["webhook_events"] == []
        assert client.get("/api/payments/4242").status_code == 404

    def test_transactions_and_refund(self, client, order):
        payment_id = self._invoice(client, order)

        response = client.post(f"/api/payments/{payment_id}/transactions", json={
            "type": "CHARGE", "amount": 54000, "external_ref": "check-1042",
        })
        assert response.status_code == 201
        assert response.get_json()["payment"]["status"] == "PAID"
        assert response.get_json()["transaction"]["amount"] == 54000

        response = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 54000, "reason": "Canceled job"})
        assert response.status_code == 200
        assert response.get_json()["payment"]["status"] == "REFUNDED"

        response = client.post(f"/api/payments/{payment_id}/refund", json={"amount": 1})
        assert response.status_code == 409

    def test_transaction_validation(self, client, order):
        payment_id = self._invoice(client, order)
        url = f"/api/payments/{payment_id}/transactions"

        assert client.post(url, json={"amount": 100}).status_code == 400
        assert client.post(url, json={"type": "CHARGE"}).status_code == 400
        assert client.post(url, json={"type": "CHARGE", "amount": "100.00"}).status_code == 400
        assert client.post(url, json={"type": "CHARGE", "amount": -100}).status_code == 400

    def test_cancel_paid_payment_conflicts(self, client, order):
        payment_id = self._invoice(client, order)
        client.post(f"/api/payments/{payment_id}/transactions", json={"type": "CHARGE", "amount": 54000})

        response = client.post(f"/api/payments/{payment_id}/cancel", json={})

        assert response.status_code == 409
        assert client.get(f"/api/payments/{payment_id}").get_json()["payment"]["status"] == "PAID"

    def test_patch(self, client, order):
        payment_id = self._invoice(client, order)

        response = client.patch(f"/api/payments/{payment_id}", json={"notes": "Leave at gate"})
        assert response.status_code == 200
        assert response.get_json()["payment"]["notes"] == "Leave at gate"

        assert client.patch(f"/api/payments/{payment_id}", json={"status": "PAID"}).status_code == 400
        assert client.patch(f"/api/payments/{payment_id}", json={}).status_code == 400

    def test_reminders(self, client, order):
        payment_id = self._invoice(client, order)

        response = client.post(f"/api/payments/{payment_id}/reminders", json={
            "type": "follow_up", "scheduled_at": "2026-11-10T15:00:00Z",
        })
        assert response.status_code == 201
        reminder = response.get_json()["reminder"]
        assert reminder["type"] == "FOLLOW_UP"
        assert reminder["status"] == "SCHEDULED"

        response = client.post(f"/api/payments/{payment_id}/reminders/{reminder['id']}/sent", json={})
        assert response.status_code == 200
        assert response.get_json()["reminder"]["status"] == "SENT"

        assert client.post(f"/api/payments/{payment_id}/reminders", json={"type": "INITIAL"}).status_code == 400
        assert client.post(f"/api/payments/{payment_id}/reminders/999/sent", json={}).status_code == 404

    def test_refresh(self, client, provider, order):
        payment_id = self._invoice(client, order)
        invoice_id = client.get(f"/api/payments/{payment_id}").get_json()["payment"]["square_invoice_id"]
        provider.record_payment(invoice_id, 54000)

        response = client.post(f"/api/payments/{payment_id}/refresh")

        assert response.status_code == 200
        assert response.get_json()["payment"]["status"] == "PAID"

    def test_create_remote_invoice_and_send_by_payment(self, client, order):
        created = client.post("/api/payments", json={"order_id": order.id})
        assert created.status_code == 201
        payment_id = created.get_json()["payment"]["id"]

        response = client.post(f"/api/payments/{payment_id}/invoice", json={"delivery_method": "SMS"})
        assert response.status_code == 201
        assert response.get_json()["payment"]["square_invoice_id"]

        response = client.post(f"/api/payments/{payment_id}/send", json={"delivery_method": "SMS"})
        assert response.status_code == 200
        assert response.get_json()["payment"]["status"] == "SENT"

    def test_create_payment_validation(self, client, order_factory):
        assert client.post("/api/payments", json={}).status_code == 400
        assert client.post("/api/payments", json={"order_id": 77}).status_code == 404
        unpriced = order_factory(order_number="ORD-6001", final_price=None)
        assert client.post("/api/payments", json={"order_id": unpriced.id}).status_code == 400


class TestSystemRoutes:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["invoice_provider"]["details"]["provider"] == "mock"

    def test_mock_invoice_page(self, client, order):
        invoice = client.post(f"/api/orders/{order.id}/invoice", json={}).get_json()["invoice"]

        response = client.get(f"/dev/mock-square-invoice/{invoice['external_id']}")

        assert response.status_code == 200
        assert response.get_json()["invoice"]["total_amount"] == 54000
        assert client.get("/dev/mock-square-invoice/inv_missing").status_code == 404
