# Overview: Payment Lifecycle Manager; owns every payment status transition and the money it moves.

"""
Payment Lifecycle Service

WHY: One place decides how a payment moves DRAFT -> SENT -> PAID (or
CANCELED / REFUNDED / FAILED / OVERDUE) and how paid_amount and
refunded_amount change. Admin routes, webhooks, the overdue sweep and the
status refresh all go through the same transitions.

DESIGN PRINCIPLES:
- Transition table lives in payment_states; a rejected transition never
  mutates the payment
- Money moves only through ledger transactions (CHARGE / REFUND)
- Provider calls happen outside the database unit of work; a provider
  failure leaves local state untouched
- Webhooks are idempotent on (source, event_id): logged first, applied at
  most once, invalid transitions IGNORED rather than raised
- Every unit of work commits once and is retried on concurrent updates
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    AdapterError,
    BillingError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import Payment, PaymentReminder, PaymentTransaction, PaymentWebhookEvent
from ..money import require_cents, tax_for
from ..providers.base import InvoicePayment, InvoiceProvider, InvoiceRequest, InvoiceSnapshot
from ..validation import ModelValidationPolicy, coerce_date
from ark_billing.time_utils import utcnow, utctoday
from .concurrency import run_with_retry
from .ledger_store import PaymentFilters, PaymentLedgerStore, PaymentPage
from .order_source import OrderSnapshot, OrderSource, SqlOrderSource
from .payment_states import (
    ACTIVE_STATUSES,
    DELIVERED_STATUSES,
    NON_TERMINAL_STATUSES,
    REMINDER_TYPES,
    STATUS_CANCELED,
    STATUS_DRAFT,
    STATUS_PENDING,
    STATUS_REFUNDED,
    STATUS_SENT,
    WEBHOOK_FINAL_STATUSES,
    can_apply,
    is_terminal,
    require_transition,
)
from .webhook_events import (
    InvoiceCanceled,
    InvoiceChargeFailed,
    InvoicePaymentMade,
    InvoiceSent,
    InvoiceUpdated,
    InvoiceViewed,
    UnknownEvent,
    parse_event,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

INVOICE_METHOD = "SQUARE_INVOICE"
DEFAULT_CANCEL_REASON = "Canceled by admin"
PROVIDER_CANCEL_REASON = "Canceled via Square"
# metadata["source"] on CHARGEs collected through the invoice provider
PROVIDER_CHARGE_SOURCE = "provider"

# Admin PATCH surface: descriptive fields only, never status or money
ADMIN_UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "due_date",
        "description",
        "notes",
        "metadata_json",
        "customer_email",
        "customer_phone",
        "delivery_method",
    }),
)


class RefundPolicy(str, Enum):
    """
    FULL_REFUND_ONLY: REFUNDED once refunded_amount reaches paid_amount;
                      a partial refund keeps the current status.
    ANY_REFUND:       any refund moves the payment to REFUNDED.
    """
    FULL_REFUND_ONLY = "FULL_REFUND_ONLY"
    ANY_REFUND = "ANY_REFUND"


class WebhookEventIgnored(Exception):
    """Raised inside webhook handlers for events that are valid but have nothing to apply."""
    pass


def normalize_delivery_method(value: str | None) -> str:
    """EMAIL, SMS, or MANUAL (SHARE_MANUALLY is accepted as MANUAL)."""
    method = (value or "EMAIL").strip().upper()
    if method == "SHARE_MANUALLY":
        method = "MANUAL"
    if method not in ("EMAIL", "SMS", "MANUAL"):
        raise ValidationError(f"Invalid delivery method: {value}. Must be one of EMAIL, SMS, SHARE_MANUALLY")
    return method


def _append_note(existing: str | None, note: str) -> str:
    return f"{existing}\n{note}" if existing else note


@dataclass
class InvoiceResult:
    """Payment plus the remote invoice view, as returned by the admin invoice routes."""
    payment: Payment
    invoice: InvoiceSnapshot | None
    message: str | None = None
    created: bool = False

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.to_dict(include_children=True),
            "invoice": self.invoice.to_dict() if self.invoice else None,
            "message": self.message,
        }


class PaymentLifecycleManager:
    def __init__(
        self,
        store: PaymentLedgerStore,
        provider: InvoiceProvider,
        orders: OrderSource,
        *,
        tax_rate_bps: int = 800,
        refund_policy: RefundPolicy = RefundPolicy.FULL_REFUND_ONLY,
        retry_attempts: int = 3,
    ):
        if tax_rate_bps < 0:
            raise ValueError("tax_rate_bps must be >= 0")
        self.store = store
        self.provider = provider
        self.orders = orders
        self.session = store.session
        self.tax_rate_bps = tax_rate_bps
        self.refund_policy = RefundPolicy(refund_policy)
        self.retry_attempts = retry_attempts

    def _unit(self, op):
        return run_with_retry(self.session, op, attempts=self.retry_attempts)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_payment(self, payment_id: int) -> Payment:
        return self.store.require_payment(payment_id)

    def list_payments(self, filters: PaymentFilters | None = None, page: int = 1, limit: int = 20) -> PaymentPage:
        return self.store.list_payments(filters, page, limit)

    def list_order_payments(self, order_id: int) -> list[Payment]:
        self.orders.get_order(order_id)
        return self.store.list_order_payments(order_id)

    # =========================================================================
    # CREATION
    # =========================================================================

    def create_payment_from_order(
        self,
        order: OrderSnapshot | int,
        method: str = INVOICE_METHOD,
        due_date: date | str | None = None,
        *,
        payment_type: str = "INVOICE",
        delivery_method: str | None = None,
        description: str | None = None,
    ) -> Payment:
        """
        Create a DRAFT payment priced from an order.

        subtotal = order final price (else quote), tax at tax_rate_bps, one
        line item describing the rental. Order details are copied into the
        payment metadata so listings never need the order source again.

        Raises:
            ValidationError: order has no price
            NotFoundError: unknown order id
        """
        snapshot = order if isinstance(order, OrderSnapshot) else self.orders.get_order(order)

        subtotal = snapshot.priced_total
        if not subtotal:
            raise ValidationError(f"Order {snapshot.order_number} has no price")
        subtotal = require_cents("subtotal_amount", subtotal, allow_zero=False)
        tax = tax_for(subtotal, self.tax_rate_bps)
        due = coerce_date(due_date, "due_date")
        delivery = normalize_delivery_method(delivery_method)

        metadata = {
            "order_number": snapshot.order_number,
            "customer_name": snapshot.customer_name,
            "customer_address": snapshot.full_address,
            "dumpster_size": snapshot.dumpster_size,
            "scheduled_delivery_date": snapshot.scheduled_delivery_date.isoformat()
            if snapshot.scheduled_delivery_date else None,
            "scheduled_pickup_date": snapshot.scheduled_pickup_date.isoformat()
            if snapshot.scheduled_pickup_date else None,
            "tax_rate_bps": self.tax_rate_bps,
        }

        def _op():
            payment = self.store.create_payment({
                "order_id": snapshot.id,
                "type": payment_type,
                "method": method,
                "subtotal_amount": subtotal,
                "tax_amount": tax,
                "due_date": due,
                "description": description or f"Dumpster rental - Order {snapshot.order_number}",
                "customer_email": snapshot.email,
                "customer_phone": snapshot.phone,
                "delivery_method": delivery,
                "metadata_json": metadata,
            })
            self.store.insert_line_items(payment.id, [{
                "name": f"Dumpster Rental - {snapshot.dumpster_size or 'Standard'} Yard",
                "description": f"Order {snapshot.order_number}",
                "quantity": 1,
                "unit_price": subtotal,
                "tax_rate": Decimal(self.tax_rate_bps) / Decimal(10_000),
                "category": "RENTAL",
            }])
            self.session.commit()
            return payment

        payment = self._unit(_op)
        logger.info("Payment %s created for order %s (%s cents)", payment.payment_number, snapshot.order_number, payment.total_amount)
        return payment

    # =========================================================================
    # REMOTE INVOICE
    # =========================================================================

    def create_remote_invoice(self, payment_id: int, request: InvoiceRequest | None = None) -> Payment:
        """
        Create the provider invoice for a DRAFT payment and store its identifiers.

        No retry here: an AdapterError propagates untouched and the payment
        stays DRAFT without remote identifiers.
        """
        payment, _ = self._create_remote(payment_id, request or InvoiceRequest())
        return payment

    def _create_remote(self, payment_id: int, request: InvoiceRequest) -> tuple[Payment, InvoiceSnapshot]:
        payment = self.store.require_payment(payment_id)
        require_transition("remote_invoice_created", payment.status)
        if payment.square_invoice_id:
            raise ConflictError(f"Payment {payment.payment_number} already has remote invoice {payment.square_invoice_id}")
        order = self.orders.get_order(payment.order_id)
        delivery = normalize_delivery_method(request.delivery_method or payment.delivery_method)
        due = request.due_date or payment.due_date
        request = InvoiceRequest(
            due_date=due,
            delivery_method=delivery,
            message=request.message,
            custom_fields=request.custom_fields,
        )
        invoice_payment = InvoicePayment.from_model(payment)
        # Release the read transaction before the network call
        self.session.commit()

        try:
            snapshot = self.provider.create_invoice(invoice_payment, order, request)
        except AdapterError as exc:
            logger.warning("Remote invoice creation failed for payment %s: %s", invoice_payment.payment_number, exc)
            raise

        def _op():
            locked = self.store.require_payment(payment_id, for_update=True)
            require_transition("remote_invoice_created", locked.status)
            if locked.square_invoice_id and locked.square_invoice_id != snapshot.external_id:
                raise ConflictError(f"Payment {locked.payment_number} already has remote invoice {locked.square_invoice_id}")
            fields = {
                "square_invoice_id": snapshot.external_id,
                "square_invoice_version": snapshot.version,
                "square_customer_id": snapshot.customer_id,
                "square_location_id": snapshot.location_id,
                "invoice_number": snapshot.invoice_number,
                "invoice_url": snapshot.public_url,
                "public_payment_url": snapshot.public_url,
                "delivery_method": delivery,
            }
            if due and locked.due_date is None:
                fields["due_date"] = due
            if request.custom_fields:
                fields["metadata_json"] = dict(locked.metadata_json or {}, custom_fields=request.custom_fields)
            self.store.update_payment(locked.id, fields)
            self.session.commit()
            return locked

        return self._unit(_op), snapshot

    def send_invoice(self, payment_id: int, delivery_method: str = "EMAIL", message: str | None = None) -> Payment:
        """
        Publish the remote invoice and move the payment to SENT.

        MANUAL delivery still transitions; the caller shares the public URL.
        """
        payment, _ = self._send(payment_id, delivery_method, message)
        return payment

    def _send(self, payment_id: int, delivery_method: str, message: str | None) -> tuple[Payment, InvoiceSnapshot]:
        delivery = normalize_delivery_method(delivery_method)
        payment = self.store.require_payment(payment_id)
        require_transition("mark_sent", payment.status)
        if not payment.square_invoice_id:
            raise ConflictError(f"Payment {payment.payment_number} has no remote invoice to send")
        external_id = payment.square_invoice_id
        self.session.commit()

        snapshot = self.provider.send_invoice(external_id, delivery)

        def _op():
            locked = self.store.require_payment(payment_id, for_update=True)
            if locked.status == STATUS_SENT:
                # A concurrent invoice.sent webhook got here first
                return locked
            require_transition("mark_sent", locked.status)
            fields = {
                "status": STATUS_SENT,
                "delivery_method": delivery,
                "square_invoice_version": snapshot.version,
            }
            if locked.sent_at is None:
                fields["sent_at"] = utcnow()
            if snapshot.public_url:
                fields["public_payment_url"] = snapshot.public_url
                fields["invoice_url"] = snapshot.public_url
            if message:
                fields["metadata_json"] = dict(locked.metadata_json or {}, send_message=message)
            self.store.update_payment(locked.id, fields)
            self.session.commit()
            return locked

        payment = self._unit(_op)
        logger.info("Payment %s sent via %s", payment.payment_number, delivery)
        return payment, snapshot

    # =========================================================================
    # CANCELLATION / FAILURE
    # =========================================================================

    def cancel_payment(self, payment_id: int, reason: str | None = None) -> tuple[Payment, InvoiceSnapshot | None]:
        """
        Cancel locally, then mirror to the provider best-effort.

        Local state is authoritative: a remote failure is logged and the
        snapshot comes back None, but the payment stays CANCELED.
        """
        reason = (reason or "").strip() or DEFAULT_CANCEL_REASON

        def _op():
            payment = self.store.require_payment(payment_id, for_update=True)
            self._cancel_locked(payment, "cancel", reason)
            # Read before commit expires the instance
            remote = (payment.payment_number, payment.square_invoice_id, payment.square_invoice_version)
            self.session.commit()
            return payment, remote

        payment, (payment_number, invoice_id, invoice_version) = self._unit(_op)
        logger.info("Payment %s canceled: %s", payment_number, reason)

        if not invoice_id:
            return payment, None

        try:
            snapshot = self.provider.cancel_invoice(invoice_id, reason, version=invoice_version)
        except AdapterError as exc:
            logger.warning(
                "Remote cancel failed for payment %s (invoice %s): %s",
                payment_number, invoice_id, exc,
            )
            return payment, None

        if snapshot.version is not None and snapshot.version != invoice_version:
            def _sync():
                locked = self.store.require_payment(payment_id, for_update=True)
                self.store.update_payment(locked.id, {"square_invoice_version": snapshot.version})
                self.session.commit()
                return locked

            payment = self._unit(_sync)
        return payment, snapshot

    def _cancel_locked(self, payment: Payment, event: str, reason: str) -> None:
        target = require_transition(event, payment.status)
        fields = {
            "status": target,
            "notes": _append_note(payment.notes, f"Canceled: {reason}"),
        }
        if payment.canceled_at is None:
            fields["canceled_at"] = utcnow()
        self.store.update_payment(payment.id, fields)
        self.store.cancel_scheduled_reminders(payment.id)

    def mark_failed(self, payment_id: int, reason: str, code: str | None = None) -> Payment:
        def _op():
            payment = self.store.require_payment(payment_id, for_update=True)
            self._fail_locked(payment, reason, code)
            self.session.commit()
            return payment

        return self._unit(_op)

    def _fail_locked(self, payment: Payment, reason: str, code: str | None) -> None:
        target = require_transition("charge_failed", payment.status)
        fields = {"status": target, "failure_reason": reason, "failure_code": code}
        if payment.failed_at is None:
            fields["failed_at"] = utcnow()
        self.store.update_payment(payment.id, fields)
        self.store.cancel_scheduled_reminders(payment.id)

    # =========================================================================
    # MONEY MOVEMENT
    # =========================================================================

    def record_transaction(
        self,
        payment_id: int,
        type: str,
        amount: int,
        external_ref: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentTransaction:
        """
        Append a ledger transaction; the only path that changes paid/refunded amounts.

        CHARGE drives the partial/full payment transitions, REFUND the refund
        transition. FEE and ADJUSTMENT are ledger-only. CHARGE, REFUND and
        FEE amounts must be > 0 (direction comes from the type).
        """
        type = (type or "").upper()
        if type == "ADJUSTMENT":
            require_cents("amount", amount, allow_zero=False, allow_negative=True)
        elif type in ("CHARGE", "REFUND", "FEE"):
            require_cents("amount", amount, allow_zero=False)
        else:
            raise ValidationError(f"Invalid transaction type: {type}. Must be one of CHARGE, REFUND, FEE, ADJUSTMENT")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")

        def _op():
            payment = self.store.require_payment(payment_id, for_update=True)
            if type == "CHARGE":
                txn = self._apply_charge(payment, amount, external_ref=external_ref, metadata=metadata)
            elif type == "REFUND":
                txn = self._apply_refund(payment, amount, external_ref=external_ref, metadata=metadata)
            else:
                txn = self.store.insert_transaction(
                    payment.id,
                    type=type,
                    amount=amount,
                    external_transaction_id=external_ref,
                    metadata=metadata,
                )
                self.store.update_payment(payment.id, {})
            self.session.commit()
            return txn

        return self._unit(_op)

    def refund_payment(
        self,
        payment_id: int,
        amount: int,
        reason: str | None = None,
        external_ref: str | None = None,
    ) -> Payment:
        metadata = {"reason": reason} if reason else None
        self.record_transaction(payment_id, "REFUND", amount, external_ref=external_ref, metadata=metadata)
        return self.store.require_payment(payment_id)

    def _apply_charge(
        self,
        payment: Payment,
        amount: int,
        *,
        external_ref: str | None,
        metadata: dict | None,
    ) -> PaymentTransaction:
        remaining = payment.total_amount - payment.paid_amount
        full = amount >= remaining
        target = require_transition("full_payment" if full else "partial_payment", payment.status)

        txn = self.store.insert_transaction(
            payment.id,
            type="CHARGE",
            amount=amount,
            external_transaction_id=external_ref,
            metadata=metadata,
        )

        fields = {"status": target}
        if full:
            overpaid = amount - remaining
            fields["paid_amount"] = payment.total_amount
            fields["paid_at"] = payment.paid_at or utcnow()
            if overpaid > 0:
                logger.warning(
                    "Payment %s overpaid by %s cents (transaction %s)",
                    payment.payment_number, overpaid, txn.id,
                )
                meta = dict(payment.metadata_json or {})
                meta["overpayment_cents"] = meta.get("overpayment_cents", 0) + overpaid
                fields["metadata_json"] = meta
        else:
            fields["paid_amount"] = payment.paid_amount + amount
        if external_ref:
            fields["square_payment_id"] = external_ref

        self.store.update_payment(payment.id, fields)
        if is_terminal(target):
            self.store.cancel_scheduled_reminders(payment.id)
        return txn

    def _apply_refund(
        self,
        payment: Payment,
        amount: int,
        *,
        external_ref: str | None,
        metadata: dict | None,
    ) -> PaymentTransaction:
        require_transition("refund", payment.status)
        refundable = payment.paid_amount - payment.refunded_amount
        if amount > refundable:
            raise ValidationError(
                f"Refund of {amount} cents exceeds refundable balance of {refundable} cents"
            )

        refunded = payment.refunded_amount + amount
        if self.refund_policy == RefundPolicy.ANY_REFUND or refunded >= payment.paid_amount:
            status = STATUS_REFUNDED
        else:
            status = payment.status

        txn = self.store.insert_transaction(
            payment.id,
            type="REFUND",
            amount=amount,
            external_transaction_id=external_ref,
            metadata=metadata,
        )
        self.store.update_payment(payment.id, {"status": status, "refunded_amount": refunded})
        if status == STATUS_REFUNDED:
            self.store.cancel_scheduled_reminders(payment.id)
        return txn

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def apply_webhook_event(
        self,
        event_type: str,
        event_id: str,
        payload: dict,
        *,
        source: str | None = None,
    ) -> PaymentWebhookEvent:
        """
        Log and apply one provider event. Idempotent on (source, event_id).

        Returns the stored event; its status is the outcome:
        PROCESSED (applied), IGNORED (duplicate-safe no-op: unknown invoice,
        unknown type, disallowed transition) or FAILED (unexpected error,
        retry_count bumped, safe to redeliver).
        """
        source = source or self.provider.source

        def _log():
            event, created = self.store.log_webhook_event(
                event_type=event_type, event_id=event_id, source=source, payload=payload,
            )
            self.session.commit()
            return event, created

        event, created = self._unit(_log)
        if not created and event.status in WEBHOOK_FINAL_STATUSES:
            logger.info("Webhook %s/%s already %s; skipping", source, event_id, event.status)
            return event

        return self._process_webhook(source, event_id, event_type, payload)

    def replay_failed_webhooks(self, limit: int = 50) -> list[PaymentWebhookEvent]:
        """Reprocess FAILED webhook events, oldest first."""
        events = [
            (e.source, e.event_id, e.event_type, e.raw_payload)
            for e in self.store.list_webhook_events(status="FAILED", limit=limit)
        ]
        self.session.commit()
        return [self._process_webhook(*args) for args in events]

    def _process_webhook(self, source: str, event_id: str, event_type: str, payload: dict) -> PaymentWebhookEvent:
        try:
            parsed = parse_event(event_type, event_id, payload)
        except ValidationError as exc:
            return self._finish_ignored(source, event_id, f"Malformed payload: {exc}")

        if isinstance(parsed, UnknownEvent):
            return self._finish_ignored(source, event_id, f"Unhandled event type {event_type}")

        def _op():
            event = self.store.get_webhook_event(source=source, event_id=event_id, for_update=True)
            if event.status in WEBHOOK_FINAL_STATUSES:
                return event

            payment = self.store.get_payment_by_external_invoice_id(parsed.invoice_id, for_update=True)
            if payment is None:
                self.store.mark_webhook_event_ignored(event, reason=f"No payment for invoice {parsed.invoice_id}")
                self.session.commit()
                return event

            try:
                outcome = self._apply_event(payment, parsed)
            except (InvalidTransitionError, WebhookEventIgnored) as exc:
                logger.warning("Webhook %s (%s) ignored for payment %s: %s", event_id, event_type, payment.payment_number, exc)
                self.store.mark_webhook_event_ignored(event, reason=str(exc), payment_id=payment.id)
                self.session.commit()
                return event

            self.store.update_payment(payment.id, {
                "last_webhook_event_id": event_id,
                "last_webhook_at": utcnow(),
            })
            self.store.mark_webhook_event_processed(event, payment_id=payment.id, processed_payload=outcome)
            self.session.commit()
            return event

        try:
            return self._unit(_op)
        except Exception as exc:
            self.session.rollback()
            logger.exception("Webhook %s/%s failed", source, event_id)

            def _fail():
                event = self.store.get_webhook_event(source=source, event_id=event_id)
                self.store.mark_webhook_event_failed(event, reason=str(exc) or exc.__class__.__name__)
                self.session.commit()
                return event

            return self._unit(_fail)

    def _finish_ignored(self, source: str, event_id: str, reason: str) -> PaymentWebhookEvent:
        def _op():
            event = self.store.get_webhook_event(source=source, event_id=event_id, for_update=True)
            if event.status not in WEBHOOK_FINAL_STATUSES:
                self.store.mark_webhook_event_ignored(event, reason=reason)
            self.session.commit()
            return event

        logger.info("Webhook %s/%s ignored: %s", source, event_id, reason)
        return self._unit(_op)

    def _apply_event(self, payment: Payment, event) -> dict:
        """
        Apply a parsed event to a locked payment; returns the processed payload.

        Raises InvalidTransitionError or WebhookEventIgnored before any
        mutation when there is nothing to apply.
        """
        previous = payment.status
        outcome = {"event": event.kind, "previous_status": previous}

        if isinstance(event, InvoiceSent):
            target = require_transition("mark_sent", payment.status)
            fields = {"status": target, **self._remote_fields(payment, event)}
            if payment.sent_at is None:
                fields["sent_at"] = utcnow()
            self.store.update_payment(payment.id, fields)

        elif isinstance(event, InvoiceViewed):
            target = require_transition("invoice_viewed", payment.status)
            fields = {"status": target}
            if payment.viewed_at is None:
                fields["viewed_at"] = utcnow()
            self.store.update_payment(payment.id, fields)

        elif isinstance(event, InvoicePaymentMade):
            # Provider reports its own running total; manual charges are not part of it
            collected = self._provider_collected(payment)
            delta = event.cumulative_paid_amount - collected
            if delta <= 0:
                raise WebhookEventIgnored(
                    f"Completed amount {event.cumulative_paid_amount} adds nothing to "
                    f"{collected} already collected through the provider"
                )
            txn = self._apply_charge(
                payment,
                delta,
                external_ref=event.provider_payment_id,
                metadata={"source": PROVIDER_CHARGE_SOURCE, "webhook_event_id": event.event_id},
            )
            outcome["transaction_id"] = txn.id
            outcome["amount"] = delta

        elif isinstance(event, InvoiceCanceled):
            self._cancel_locked(payment, "provider_cancel", PROVIDER_CANCEL_REASON)

        elif isinstance(event, InvoiceUpdated):
            fields = self._remote_fields(payment, event)
            mirror_cancel = event.invoice_status == "CANCELED" and can_apply("provider_cancel", payment.status)
            if not fields and not mirror_cancel:
                raise WebhookEventIgnored("Invoice update carries no changes")
            if fields:
                self.store.update_payment(payment.id, fields)
            if mirror_cancel:
                self._cancel_locked(payment, "provider_cancel", PROVIDER_CANCEL_REASON)

        elif isinstance(event, InvoiceChargeFailed):
            self._fail_locked(payment, event.failure_reason, "SCHEDULED_CHARGE_FAILED")

        else:
            raise WebhookEventIgnored(f"No handler for {event.kind}")

        outcome["status"] = payment.status
        return outcome

    def _provider_collected(self, payment: Payment) -> int:
        """Sum of completed CHARGEs that came from the provider (webhook or refresh)."""
        return sum(
            txn.amount
            for txn in self.store.list_transactions(payment.id)
            if txn.type == "CHARGE"
            and txn.status == "COMPLETED"
            and (txn.metadata_json or {}).get("source") == PROVIDER_CHARGE_SOURCE
        )

    @staticmethod
    def _remote_fields(payment: Payment, event) -> dict:
        fields = {}
        if event.public_url and event.public_url != payment.public_payment_url:
            fields["public_payment_url"] = event.public_url
            fields["invoice_url"] = event.public_url
        if event.invoice_version is not None and (
            payment.square_invoice_version is None or event.invoice_version > payment.square_invoice_version
        ):
            fields["square_invoice_version"] = event.invoice_version
        return fields

    # =========================================================================
    # OVERDUE SWEEP / STATUS REFRESH
    # =========================================================================

    def check_overdue(self, today: date | None = None) -> list[Payment]:
        """
        Move SENT/VIEWED payments past their due date to OVERDUE.

        Each payment is its own unit of work; one failure does not stop the
        sweep. Schedules an OVERDUE reminder for every payment moved.
        """
        today = today or utctoday()
        candidate_ids = [p.id for p in self.store.list_overdue_candidates(today)]
        self.session.commit()

        moved = []
        for payment_id in candidate_ids:
            def _op():
                payment = self.store.require_payment(payment_id, for_update=True)
                if not can_apply("mark_overdue", payment.status):
                    return None
                if payment.due_date is None or payment.due_date >= today:
                    return None
                target = require_transition("mark_overdue", payment.status)
                self.store.update_payment(payment.id, {"status": target})
                self.store.insert_reminder(
                    payment.id,
                    type="OVERDUE",
                    method="SMS" if payment.delivery_method == "SMS" else "EMAIL",
                    scheduled_at=utcnow(),
                    subject=f"Payment {payment.payment_number} is overdue",
                )
                self.session.commit()
                return payment

            try:
                payment = self._unit(_op)
            except (BillingError, SQLAlchemyError):
                self.session.rollback()
                logger.exception("Overdue check failed for payment %s", payment_id)
                continue
            if payment is not None:
                moved.append(payment)

        if moved:
            logger.info("Marked %s payment(s) overdue", len(moved))
        return moved

    def refresh_remote_status(self, payment_id: int) -> tuple[Payment, InvoiceSnapshot]:
        """
        Pull the provider's view of the invoice and reconcile forward only.

        - remote published, local DRAFT/PENDING -> SENT
        - remote paid amount above what the provider already collected -> CHARGE for the difference
        - remote CANCELED -> CANCELED
        Anything the transition table rejects is logged and skipped.
        """
        payment = self.store.require_payment(payment_id)
        if not payment.square_invoice_id:
            raise ConflictError(f"Payment {payment.payment_number} has no remote invoice")
        external_id = payment.square_invoice_id
        self.session.commit()

        snapshot = self.provider.get_invoice_status(external_id)
        remote_status = snapshot.local_status

        def _op():
            locked = self.store.require_payment(payment_id, for_update=True)
            fields = {}
            if snapshot.public_url and snapshot.public_url != locked.public_payment_url:
                fields["public_payment_url"] = snapshot.public_url
                fields["invoice_url"] = snapshot.public_url
            if snapshot.version is not None and snapshot.version != locked.square_invoice_version:
                fields["square_invoice_version"] = snapshot.version
            self.store.update_payment(locked.id, fields)

            published = remote_status not in (None, STATUS_DRAFT, STATUS_CANCELED)
            if published and locked.status in (STATUS_DRAFT, STATUS_PENDING):
                sent = {"status": require_transition("mark_sent", locked.status)}
                if locked.sent_at is None:
                    sent["sent_at"] = utcnow()
                self.store.update_payment(locked.id, sent)

            collected = self._provider_collected(locked)
            if snapshot.paid_amount and snapshot.paid_amount > collected:
                try:
                    self._apply_charge(
                        locked,
                        snapshot.paid_amount - collected,
                        external_ref=None,
                        metadata={"source": PROVIDER_CHARGE_SOURCE, "via": "status_refresh"},
                    )
                except InvalidTransitionError as exc:
                    logger.warning("Refresh could not apply remote payment to %s: %s", locked.payment_number, exc)

            if remote_status == STATUS_CANCELED and can_apply("provider_cancel", locked.status):
                self._cancel_locked(locked, "provider_cancel", PROVIDER_CANCEL_REASON)
            elif remote_status and remote_status != locked.status:
                logger.info(
                    "Payment %s is %s locally, provider reports %s",
                    locked.payment_number, locked.status, snapshot.status,
                )

            self.session.commit()
            return locked

        return self._unit(_op), snapshot

    # =========================================================================
    # REMINDERS
    # =========================================================================

    def schedule_reminder(
        self,
        payment_id: int,
        type: str,
        scheduled_at: datetime,
        method: str = "EMAIL",
        subject: str | None = None,
        message: str | None = None,
    ) -> PaymentReminder:
        if type not in REMINDER_TYPES:
            raise ValidationError(f"Invalid reminder type: {type}. Must be one of {sorted(REMINDER_TYPES)}")

        def _op():
            payment = self.store.require_payment(payment_id, for_update=True)
            if payment.status not in NON_TERMINAL_STATUSES:
                raise ConflictError(f"Cannot schedule a reminder for a {payment.status} payment")
            reminder = self.store.insert_reminder(
                payment.id,
                type=type,
                method=method,
                scheduled_at=scheduled_at,
                subject=subject,
                message=message,
            )
            self.session.commit()
            return reminder

        return self._unit(_op)

    def mark_reminder_sent(
        self,
        reminder_id: int,
        *,
        sent_at: datetime | None = None,
        failure_reason: str | None = None,
    ) -> PaymentReminder:
        """Record delivery (or failed delivery) of a SCHEDULED reminder."""
        def _op():
            reminder = self.store.get_reminder(reminder_id)
            if reminder is None:
                raise NotFoundError(f"Reminder {reminder_id} not found")
            if reminder.status != "SCHEDULED":
                raise ConflictError(f"Reminder {reminder_id} is {reminder.status}, not SCHEDULED")
            if failure_reason:
                self.store.update_reminder(reminder, status="FAILED", failure_reason=failure_reason)
            else:
                self.store.update_reminder(reminder, status="SENT", sent_at=sent_at or utcnow())
            self.session.commit()
            return reminder

        return self._unit(_op)

    # =========================================================================
    # ADMIN
    # =========================================================================

    def update_payment_details(self, payment_id: int, fields: dict) -> Payment:
        """Admin edit of descriptive fields. Status and amounts are not editable here."""
        patch = dict(fields or {})
        if "metadata" in patch:
            patch["metadata_json"] = patch.pop("metadata")
        if patch.get("delivery_method") is not None:
            patch["delivery_method"] = normalize_delivery_method(patch["delivery_method"])

        def _op():
            payment = self.store.require_payment(payment_id, for_update=True)
            self.store.update_payment(payment.id, patch, policy=ADMIN_UPDATE_POLICY)
            self.session.commit()
            return payment

        return self._unit(_op)

    # =========================================================================
    # ORDER-LEVEL INVOICE OPERATIONS (admin surface)
    # =========================================================================

    def _order_invoice_payments(self, order_id: int) -> list[Payment]:
        self.orders.get_order(order_id)
        return [p for p in self.store.list_order_payments(order_id) if p.method == INVOICE_METHOD]

    def _active_invoice_payment(self, order_id: int) -> Payment | None:
        for payment in self._order_invoice_payments(order_id):
            if payment.status in ACTIVE_STATUSES:
                return payment
        return None

    def _latest_remote_invoice_payment(self, order_id: int) -> Payment:
        payments = [p for p in self._order_invoice_payments(order_id) if p.square_invoice_id]
        if not payments:
            raise NotFoundError(f"No invoice found for order {order_id}")
        active = [p for p in payments if p.status in ACTIVE_STATUSES]
        return (active or payments)[0]

    @staticmethod
    def _local_invoice_view(payment: Payment) -> InvoiceSnapshot | None:
        if not payment.square_invoice_id:
            return None
        return InvoiceSnapshot(
            external_id=payment.square_invoice_id,
            status=payment.status,
            public_url=payment.public_payment_url,
            version=payment.square_invoice_version,
            customer_id=payment.square_customer_id,
            location_id=payment.square_location_id,
            invoice_number=payment.invoice_number,
            paid_amount=payment.paid_amount,
        )

    def create_invoice_for_order(self, order_id: int, request: InvoiceRequest | None = None) -> InvoiceResult:
        """
        Create (or reuse) the order's invoice.

        An order never has two live provider invoices: an active one is
        returned as-is. An active DRAFT whose remote creation failed earlier
        is retried instead of creating a second payment.
        """
        request = request or InvoiceRequest()
        order = self.orders.get_order(order_id)

        active = self._active_invoice_payment(order_id)
        if active is not None and active.square_invoice_id:
            return InvoiceResult(active, self._local_invoice_view(active), "Active invoice already exists")

        if active is not None:
            payment = active
        else:
            payment = self.create_payment_from_order(
                order,
                INVOICE_METHOD,
                request.due_date,
                delivery_method=request.delivery_method,
            )

        payment, snapshot = self._create_remote(payment.id, request)
        return InvoiceResult(payment, snapshot, "Invoice created", created=True)

    def send_invoice_for_order(self, order_id: int, delivery_method: str = "EMAIL", message: str | None = None) -> InvoiceResult:
        payment = self._latest_remote_invoice_payment(order_id)
        if payment.status in DELIVERED_STATUSES:
            return InvoiceResult(payment, self._local_invoice_view(payment), "Invoice already sent")
        payment, snapshot = self._send(payment.id, delivery_method, message)
        return InvoiceResult(payment, snapshot, "Invoice sent")

    def cancel_invoice_for_order(self, order_id: int, reason: str | None = None) -> InvoiceResult:
        payment = self._active_invoice_payment(order_id)
        if payment is None:
            raise NotFoundError(f"No active invoice found for order {order_id}")

        payment, snapshot = self.cancel_payment(payment.id, reason)
        if payment.square_invoice_id and snapshot is None:
            return InvoiceResult(
                payment,
                self._local_invoice_view(payment),
                "Invoice canceled locally; remote cancellation failed",
            )
        return InvoiceResult(payment, snapshot or self._local_invoice_view(payment), "Invoice canceled")

    def get_invoice_status_for_order(self, order_id: int) -> InvoiceResult:
        payment = self._latest_remote_invoice_payment(order_id)
        payment, snapshot = self.refresh_remote_status(payment.id)
        return InvoiceResult(payment, snapshot)


def get_lifecycle_manager() -> PaymentLifecycleManager:
    """Manager bound to the current app's session, provider and config."""
    config = current_app.config
    store = PaymentLedgerStore(
        db.session,
        tenant_code=config["BILLING_TENANT_CODE"],
        number_prefix=config["PAYMENT_NUMBER_PREFIX"],
        max_page_size=config["PAYMENT_LIST_MAX_LIMIT"],
    )
    return PaymentLifecycleManager(
        store,
        current_app.extensions["invoice_provider"],
        SqlOrderSource(db.session),
        tax_rate_bps=config["PAYMENT_TAX_RATE_BPS"],
        refund_policy=RefundPolicy(config["PAYMENT_REFUND_POLICY"]),
    )
