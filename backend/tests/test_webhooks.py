"""
Webhook endpoint and processing tests.

Deliveries are built and signed by the mock provider, so they go through
the same signature check as real Square deliveries.
"""

import json

import pytest

from ark_billing.models import PaymentWebhookEvent, SecurityEvent
from ark_billing.providers.base import SIGNATURE_HEADER, compute_signature
from ark_billing.services.webhook_events import (
    InvoicePaymentMade,
    UnknownEvent,
    parse_event,
)
from ark_billing.errors import ValidationError


def _deliver(client, body: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers[SIGNATURE_HEADER] = signature
    return client.post("/api/webhooks/square", data=body, headers=headers)


def _signed(provider, payload: dict):
    body = json.dumps(payload).encode("utf-8")
    return body, compute_signature(provider.webhook_signature_key, provider.webhook_url, body)


def _event(db_session, event_id):
    return db_session.query(PaymentWebhookEvent).filter_by(event_id=event_id).one()


class TestSignature:
    def test_missing_signature_rejected(self, client, db_session, provider, sent_payment):
        body, _ = provider.build_webhook("invoice.payment_made", sent_payment.square_invoice_id)

        response = _deliver(client, body, None)

        assert response.status_code == 401
        assert db_session.query(PaymentWebhookEvent).count() == 0
        (security_event,) = db_session.query(SecurityEvent).all()
        assert security_event.event_type == "WEBHOOK_SIGNATURE_MISSING"

    def test_tampered_body_rejected(self, client, db_session, provider, sent_payment):
        provider.record_payment(sent_payment.square_invoice_id, 54000)
        body, signature = provider.build_webhook("invoice.payment_made", sent_payment.square_invoice_id)
        tampered = body.replace(b"54000", b"99999")

        response = _deliver(client, tampered, signature)

        assert response.status_code == 401
        assert db_session.query(PaymentWebhookEvent).count() == 0
        (security_event,) = db_session.query(SecurityEvent).all()
        assert security_event.event_type == "WEBHOOK_SIGNATURE_INVALID"
        assert security_event.resource == "/api/webhooks/square"
        assert len(security_event.body_sha256) == 64

    def test_authentic_non_event_body(self, client, provider):
        body, signature = _signed(provider, {"hello": "world"})
        assert _deliver(client, body, signature).status_code == 400


class TestPaymentMade:
    def test_full_payment(self, client, db_session, provider, manager, sent_payment):
        provider.record_payment(sent_payment.square_invoice_id, 54000)
        body, signature = provider.build_webhook(
            "invoice.payment_made", sent_payment.square_invoice_id, event_id="evt_full",
        )

        response = _deliver(client, body, signature)

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "event_id": "evt_full", "status": "PROCESSED"}
        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "PAID"
        assert payment.paid_amount == 54000
        assert [(t.type, t.amount) for t in payment.transactions] == [("CHARGE", 54000)]
        assert payment.last_webhook_event_id == "evt_full"

        event = _event(db_session, "evt_full")
        assert event.payment_id == payment.id
        assert event.processed_payload["previous_status"] == "SENT"
        assert event.processed_payload["status"] == "PAID"

    def test_partial_payment_replayed(self, client, db_session, provider, manager, sent_payment):
        provider.record_payment(sent_payment.square_invoice_id, 20000)
        body, signature = provider.build_webhook(
            "invoice.payment_made", sent_payment.square_invoice_id, event_id="evt_partial",
        )

        first = _deliver(client, body, signature)
        second = _deliver(client, body, signature)

        assert first.status_code == 200
        assert second.status_code == 200
        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "PARTIALLY_PAID"
        assert payment.paid_amount == 20000
        assert len(payment.transactions) == 1

        event = _event(db_session, "evt_partial")
        assert event.status == "PROCESSED"
        assert event.delivery_count == 2

    def test_cumulative_amounts_charge_the_difference(self, client, provider, manager, sent_payment):
        invoice_id = sent_payment.square_invoice_id
        provider.record_payment(invoice_id, 20000)
        _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_a"))
        provider.record_payment(invoice_id, 34000)
        _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_b"))

        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "PAID"
        assert [t.amount for t in payment.transactions] == [20000, 34000]

    def test_manual_charge_not_counted_against_square_total(self, client, provider, manager, sent_payment):
        invoice_id = sent_payment.square_invoice_id
        manager.record_transaction(sent_payment.id, "CHARGE", 10000, external_ref="check-1042")
        provider.record_payment(invoice_id, 20000)

        response = _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_card"))

        assert response.status_code == 200
        assert response.get_json()["status"] == "PROCESSED"
        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "PARTIALLY_PAID"
        assert payment.paid_amount == 30000
        assert [t.amount for t in payment.transactions] == [10000, 20000]

    def test_manual_and_square_payments_settle_invoice(self, client, provider, manager, sent_payment):
        invoice_id = sent_payment.square_invoice_id
        manager.record_transaction(sent_payment.id, "CHARGE", 10000, external_ref="check-1042")
        provider.record_payment(invoice_id, 20000)
        _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_card"))
        provider.record_payment(invoice_id, 24000)
        _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_card_2"))

        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "PAID"
        assert payment.paid_amount == 54000
        assert [t.amount for t in payment.transactions] == [10000, 20000, 24000]

    def test_stale_cumulative_amount_ignored(self, client, db_session, provider, manager, sent_payment):
        invoice_id = sent_payment.square_invoice_id
        provider.record_payment(invoice_id, 20000)
        stale = provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_old")
        provider.record_payment(invoice_id, 10000)
        _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id, event_id="evt_new"))

        response = _deliver(client, *stale)

        assert response.status_code == 200
        assert response.get_json()["status"] == "IGNORED"
        assert manager.get_payment(sent_payment.id).paid_amount == 30000


class TestOtherEvents:
    def test_viewed(self, client, provider, manager, sent_payment):
        _deliver(client, *provider.build_webhook("invoice.viewed", sent_payment.square_invoice_id))

        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "VIEWED"
        assert payment.viewed_at is not None

    def test_sent_webhook_moves_draft(self, client, provider, manager, order):
        payment = manager.create_payment_from_order(order.id)
        payment = manager.create_remote_invoice(payment.id)
        provider.send_invoice(payment.square_invoice_id, "EMAIL")

        _deliver(client, *provider.build_webhook("invoice.sent", payment.square_invoice_id))

        payment = manager.get_payment(payment.id)
        assert payment.status == "SENT"
        assert payment.square_invoice_version == 1

    def test_canceled_by_provider(self, client, provider, manager, sent_payment):
        provider.cancel_invoice(sent_payment.square_invoice_id)
        _deliver(client, *provider.build_webhook("invoice.canceled", sent_payment.square_invoice_id))

        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "CANCELED"
        assert "Canceled via Square" in payment.notes

    def test_scheduled_charge_failed(self, client, provider, manager, sent_payment):
        _deliver(client, *provider.build_webhook("invoice.scheduled_charge_failed", sent_payment.square_invoice_id))

        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "FAILED"
        assert payment.failure_code == "SCHEDULED_CHARGE_FAILED"

    def test_out_of_order_viewed_after_paid_is_ignored(self, client, db_session, provider, manager, sent_payment):
        invoice_id = sent_payment.square_invoice_id
        viewed = provider.build_webhook("invoice.viewed", invoice_id, event_id="evt_viewed")
        provider.record_payment(invoice_id, 54000)
        _deliver(client, *provider.build_webhook("invoice.payment_made", invoice_id))

        response = _deliver(client, *viewed)

        assert response.status_code == 200
        payment = manager.get_payment(sent_payment.id)
        assert payment.status == "PAID"
        assert payment.viewed_at is None
        event = _event(db_session, "evt_viewed")
        assert event.status == "IGNORED"
        assert event.payment_id == payment.id

    def test_updated_with_nothing_new_is_ignored(self, client, provider, sent_payment):
        response = _deliver(client, *provider.build_webhook("invoice.updated", sent_payment.square_invoice_id))
        assert response.get_json()["status"] == "IGNORED"


class TestIgnoredAndFailed:
    def test_unknown_invoice_is_ignored(self, client, db_session, provider):
        body, signature = _signed(provider, {
            "type": "invoice.payment_made",
            "event_id": "evt_orphan",
            "data": {"id": "inv_nowhere", "object": {"invoice": {
                "id": "inv_nowhere",
                "payment_requests": [{"total_completed_amount_money": {"amount": 100}}],
            }}},
        })

        response = _deliver(client, body, signature)

        assert response.status_code == 200
        event = _event(db_session, "evt_orphan")
        assert event.status == "IGNORED"
        assert "inv_nowhere" in event.failure_reason

    def test_unknown_event_type_is_ignored(self, client, db_session, provider):
        body, signature = _signed(provider, {"type": "customer.created", "event_id": "evt_cust", "data": {}})

        response = _deliver(client, body, signature)

        assert response.status_code == 200
        assert _event(db_session, "evt_cust").status == "IGNORED"

    def test_malformed_known_event_is_ignored(self, client, db_session, provider):
        body, signature = _signed(provider, {"type": "invoice.viewed", "event_id": "evt_bad", "data": {}})

        response = _deliver(client, body, signature)

        assert response.status_code == 200
        assert _event(db_session, "evt_bad").status == "IGNORED"

    def test_unexpected_error_marks_failed_and_replays(
        self, client, db_session, provider, manager, sent_payment, monkeypatch,
    ):
        from ark_billing.services.payment_service import PaymentLifecycleManager

        original = PaymentLifecycleManager._apply_event

        def explode(self, payment, event):
            raise RuntimeError("database hiccup")

        monkeypatch.setattr(PaymentLifecycleManager, "_apply_event", explode)
        provider.record_payment(sent_payment.square_invoice_id, 54000)
        delivery = provider.build_webhook(
            "invoice.payment_made", sent_payment.square_invoice_id, event_id="evt_flaky",
        )

        response = _deliver(client, *delivery)

        assert response.status_code == 500
        event = _event(db_session, "evt_flaky")
        assert event.status == "FAILED"
        assert event.retry_count == 1
        assert "database hiccup" in event.failure_reason
        assert manager.get_payment(sent_payment.id).paid_amount == 0

        monkeypatch.setattr(PaymentLifecycleManager, "_apply_event", original)
        (replayed,) = manager.replay_failed_webhooks()

        assert replayed.status == "PROCESSED"
        assert manager.get_payment(sent_payment.id).status == "PAID"


class TestParser:
    def test_payment_made_amount_from_strings_and_camel_case(self):
        event = parse_event("invoice.payment_made", "evt_1", {
            "data": {"object": {
                "invoice": {
                    "id": "inv_1",
                    "version": "3",
                    "paymentRequests": [
                        {"totalCompletedAmountMoney": {"amount": "15000"}},
                        {"totalCompletedAmountMoney": {"amount": 5000}},
                    ],
                },
                "payment": {"id": "pay_9"},
            }},
        })

        assert isinstance(event, InvoicePaymentMade)
        assert event.invoice_id == "inv_1"
        assert event.invoice_version == 3
        assert event.cumulative_paid_amount == 20000
        assert event.provider_payment_id == "pay_9"

    def test_unknown_type(self):
        event = parse_event("loyalty.updated", "evt_2", {"data": {"id": "inv_7"}})
        assert isinstance(event, UnknownEvent)
        assert event.invoice_id == "inv_7"

    @pytest.mark.parametrize("amount", [-5, 12.5, "12.50", True])
    def test_bad_amounts(self, amount):
        with pytest.raises(ValidationError):
            parse_event("invoice.payment_made", "evt_3", {
                "data": {"object": {"invoice": {
                    "id": "inv_1",
                    "payment_requests": [{"total_completed_amount_money": {"amount": amount}}],
                }}},
            })
