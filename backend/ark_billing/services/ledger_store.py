# Overview: Payment Ledger Store; durable CRUD and filtered listing for payments and their children.

"""
Payment Ledger Store

Durable records for Payment, PaymentLineItem, PaymentTransaction,
PaymentReminder and PaymentWebhookEvent.

INVARIANTS (enforced here, nothing else):
- total_amount == subtotal_amount + tax_amount
- line item total_price == unit_price * quantity (recomputed, never trusted)
- lifecycle timestamps (sent_at, paid_at, ...) are written once, never rewound
- no deletes: cancellation and refunds are status changes

No business rules: status transitions belong to the lifecycle manager.
Methods flush but never commit; the caller owns the unit of work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, ValidationError
from ..models import (
    Order,
    Payment,
    PaymentLineItem,
    PaymentReminder,
    PaymentTransaction,
    PaymentWebhookEvent,
)
from ..money import require_cents
from ..time_utils import utcnow
from ..validation import ModelValidationPolicy, enforce_amount_rules, validate_payload
from .concurrency import lock_for_update
from .payment_states import (
    PAYMENT_METHODS,
    PAYMENT_TYPES,
    REMINDER_METHODS,
    REMINDER_STATUSES,
    REMINDER_TYPES,
    STATUS_DRAFT,
    STATUS_SENT,
    STATUS_VIEWED,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    VALID_STATUSES,
    WEBHOOK_STATUS_FAILED,
    WEBHOOK_STATUS_IGNORED,
    WEBHOOK_STATUS_PENDING,
    WEBHOOK_STATUS_PROCESSED,
)
from .sequence_service import next_payment_number


DEFAULT_PAGE_SIZE = 20

CREATE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "order_id",
        "type",
        "method",
        "subtotal_amount",
        "tax_amount",
        "total_amount",
        "due_date",
        "description",
        "notes",
        "customer_email",
        "customer_phone",
        "delivery_method",
        "metadata_json",
    }),
    required_on_create=frozenset({"order_id", "method", "subtotal_amount"}),
)

UPDATABLE_FIELDS = frozenset({
    "status",
    "paid_amount",
    "refunded_amount",
    "due_date",
    "description",
    "notes",
    "metadata_json",
    "customer_email",
    "customer_phone",
    "delivery_method",
    "square_invoice_id",
    "square_invoice_version",
    "square_payment_id",
    "square_customer_id",
    "square_location_id",
    "invoice_number",
    "invoice_url",
    "public_payment_url",
    "sent_at",
    "viewed_at",
    "paid_at",
    "failed_at",
    "canceled_at",
    "last_webhook_event_id",
    "last_webhook_at",
    "failure_reason",
    "failure_code",
})
UPDATE_POLICY = ModelValidationPolicy(writable_fields=UPDATABLE_FIELDS)

OVERDUE_SOURCE_STATUSES = (STATUS_SENT, STATUS_VIEWED)

WRITE_ONCE_TIMESTAMPS = ("sent_at", "viewed_at", "paid_at", "failed_at", "canceled_at")


@dataclass
class PaymentFilters:
    order_id: int | None = None
    status: list[str] = field(default_factory=list)
    method: list[str] = field(default_factory=list)
    type: list[str] = field(default_factory=list)
    date_from: datetime | None = None
    date_to: datetime | None = None
    amount_min: int | None = None
    amount_max: int | None = None
    search: str | None = None


@dataclass
class PaymentPage:
    items: list
    total: int
    page: int
    limit: int
    has_more: bool

    def to_dict(self) -> dict:
        return {
            "payments": [p.to_dict() for p in self.items],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "has_more": self.has_more,
        }


def _check_member(name: str, value, allowed: set) -> None:
    if value not in allowed:
        raise ValidationError(f"Invalid {name}: {value}. Must be one of {sorted(allowed)}")


class PaymentLedgerStore:
    """Ledger store bound to one SQLAlchemy session and one tenant."""

    def __init__(self, session, *, tenant_code: str, number_prefix: str = "PAY", max_page_size: int = 100):
        self.session = session
        self.tenant_code = tenant_code
        self.number_prefix = number_prefix
        self.max_page_size = max_page_size

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    def create_payment(self, fields: dict) -> Payment:
        """
        Insert a DRAFT payment.

        Derives total_amount from subtotal + tax; a caller-supplied
        total_amount must agree. Allocates the tenant's next payment_number.
        """
        patch = validate_payload(model=Payment, payload=dict(fields), policy=CREATE_POLICY, partial=False)

        subtotal = require_cents("subtotal_amount", patch["subtotal_amount"])
        tax = require_cents("tax_amount", patch.get("tax_amount") or 0)
        total = subtotal + tax
        if patch.get("total_amount") is not None and patch["total_amount"] != total:
            raise ValidationError(
                f"total_amount {patch['total_amount']} does not equal subtotal_amount + tax_amount ({total})"
            )
        enforce_amount_rules({"total_amount": total}, ("total_amount",))

        payment_type = patch.get("type") or "INVOICE"
        _check_member("payment type", payment_type, PAYMENT_TYPES)
        _check_member("payment method", patch["method"], PAYMENT_METHODS)

        if self.session.get(Order, patch["order_id"]) is None:
            raise NotFoundError(f"Order {patch['order_id']} not found")

        now = utcnow()
        payment = Payment(
            tenant_code=self.tenant_code,
            payment_number=next_payment_number(
                self.session, tenant_code=self.tenant_code, prefix=self.number_prefix
            ),
            order_id=patch["order_id"],
            type=payment_type,
            method=patch["method"],
            status=STATUS_DRAFT,
            subtotal_amount=subtotal,
            tax_amount=tax,
            total_amount=total,
            paid_amount=0,
            refunded_amount=0,
            due_date=patch.get("due_date"),
            description=patch.get("description"),
            notes=patch.get("notes"),
            customer_email=patch.get("customer_email"),
            customer_phone=patch.get("customer_phone"),
            delivery_method=patch.get("delivery_method"),
            metadata_json=patch.get("metadata_json") or {},
            created_at=now,
            updated_at=now,
        )
        self.session.add(payment)
        self.session.flush()
        return payment

    def get_payment(self, payment_id: int, *, for_update: bool = False) -> Payment | None:
        query = self.session.query(Payment).filter_by(id=payment_id)
        if for_update:
            query = lock_for_update(query)
        return query.first()

    def require_payment(self, payment_id: int, *, for_update: bool = False) -> Payment:
        payment = self.get_payment(payment_id, for_update=for_update)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def get_payment_by_external_invoice_id(self, invoice_id: str, *, for_update: bool = False) -> Payment | None:
        if not invoice_id:
            return None
        query = self.session.query(Payment).filter_by(square_invoice_id=invoice_id)
        if for_update:
            query = lock_for_update(query)
        return query.first()

    def update_payment(self, payment_id: int, fields: dict, *, policy: ModelValidationPolicy = UPDATE_POLICY) -> Payment:
        """
        Whitelist-based partial update. Always bumps updated_at.

        Raises NotFoundError for an unknown id and ValidationError for fields
        outside the policy or a rewrite of an already-set lifecycle timestamp.
        """
        payment = self.require_payment(payment_id)
        patch = validate_payload(model=Payment, payload=dict(fields), policy=policy, partial=True)
        enforce_amount_rules(patch, ("paid_amount", "refunded_amount"))

        if "status" in patch:
            _check_member("status", patch["status"], VALID_STATUSES)
        for name in WRITE_ONCE_TIMESTAMPS:
            if name in patch and getattr(payment, name) is not None and patch[name] != getattr(payment, name):
                raise ValidationError(f"{name} is already set and cannot be changed")

        for key, value in patch.items():
            setattr(payment, key, value)
        payment.updated_at = utcnow()
        self.session.flush()
        return payment

    def list_payments(self, filters: PaymentFilters | None = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> PaymentPage:
        """
        Filtered, offset-paginated listing, newest first.

        limit is capped at max_page_size; page is 1-based.
        """
        filters = filters or PaymentFilters()
        page = max(1, int(page or 1))
        limit = max(1, min(int(limit or DEFAULT_PAGE_SIZE), self.max_page_size))
        offset = (page - 1) * limit

        query = self.session.query(Payment).filter(Payment.tenant_code == self.tenant_code)

        if filters.order_id is not None:
            query = query.filter(Payment.order_id == filters.order_id)
        if filters.status:
            query = query.filter(Payment.status.in_(filters.status))
        if filters.method:
            query = query.filter(Payment.method.in_(filters.method))
        if filters.type:
            query = query.filter(Payment.type.in_(filters.type))
        if filters.date_from is not None:
            query = query.filter(Payment.created_at >= filters.date_from)
        if filters.date_to is not None:
            query = query.filter(Payment.created_at <= filters.date_to)
        if filters.amount_min is not None:
            query = query.filter(Payment.total_amount >= filters.amount_min)
        if filters.amount_max is not None:
            query = query.filter(Payment.total_amount <= filters.amount_max)
        if filters.search:
            term = f"%{filters.search.strip()}%"
            query = query.outerjoin(Order, Payment.order_id == Order.id).filter(
                or_(
                    Payment.payment_number.ilike(term),
                    Payment.customer_email.ilike(term),
                    Order.order_number.ilike(term),
                    Order.email.ilike(term),
                    Order.first_name.ilike(term),
                    Order.last_name.ilike(term),
                )
            )

        total = query.count()
        items = (
            query.order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return PaymentPage(items=items, total=total, page=page, limit=limit, has_more=offset + limit < total)

    def list_order_payments(self, order_id: int) -> list[Payment]:
        return (
            self.session.query(Payment)
            .filter_by(order_id=order_id, tenant_code=self.tenant_code)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )

    def list_overdue_candidates(self, today: date, statuses: Iterable[str] = OVERDUE_SOURCE_STATUSES) -> list[Payment]:
        """Unpaid invoices whose due_date is strictly before today."""
        return (
            self.session.query(Payment)
            .filter(
                Payment.tenant_code == self.tenant_code,
                Payment.status.in_(list(statuses)),
                Payment.due_date.isnot(None),
                Payment.due_date < today,
            )
            .order_by(Payment.due_date, Payment.id)
            .all()
        )

    # =========================================================================
    # LINE ITEMS
    # =========================================================================

    def insert_line_items(self, payment_id: int, items: Iterable[dict]) -> list[PaymentLineItem]:
        """
        Append line items to a payment.

        total_price is recomputed as unit_price * quantity; a caller value
        that disagrees is rejected rather than silently replaced.
        """
        self.require_payment(payment_id)
        rows = []
        for item in items:
            name = (item.get("name") or "").strip()
            if not name:
                raise ValidationError("line item name is required")

            quantity = item.get("quantity", 1)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError("line item quantity must be a positive integer")
            unit_price = require_cents("unit_price", item.get("unit_price"))

            total_price = unit_price * quantity
            if item.get("total_price") is not None and item["total_price"] != total_price:
                raise ValidationError(
                    f"line item total_price {item['total_price']} != unit_price * quantity ({total_price})"
                )

            tax_rate = item.get("tax_rate")
            tax_amount = item.get("tax_amount")
            if tax_rate is not None:
                try:
                    rate = Decimal(str(tax_rate))
                except InvalidOperation:
                    raise ValidationError(f"Invalid tax_rate: {tax_rate!r}")
                if rate < 0 or rate >= 1:
                    raise ValidationError("tax_rate must be a fraction between 0 and 1")
                computed = int((Decimal(total_price) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
                if tax_amount is not None and tax_amount != computed:
                    raise ValidationError(f"line item tax_amount {tax_amount} != computed {computed}")
                tax_rate, tax_amount = rate, computed
            elif tax_amount is not None:
                tax_amount = require_cents("tax_amount", tax_amount)

            row = PaymentLineItem(
                payment_id=payment_id,
                name=name,
                description=item.get("description"),
                quantity=quantity,
                unit_price=unit_price,
                total_price=total_price,
                tax_rate=tax_rate,
                tax_amount=tax_amount,
                category=item.get("category"),
                sku=item.get("sku"),
                metadata_json=item.get("metadata") or {},
            )
            self.session.add(row)
            rows.append(row)
        self.session.flush()
        return rows

    # =========================================================================
    # TRANSACTIONS / REMINDERS
    # =========================================================================

    def insert_transaction(
        self,
        payment_id: int,
        *,
        type: str,
        amount: int,
        status: str = "COMPLETED",
        external_transaction_id: str | None = None,
        external_reference: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        processed_at: datetime | None = None,
    ) -> PaymentTransaction:
        _check_member("transaction type", type, TRANSACTION_TYPES)
        _check_member("transaction status", status, TRANSACTION_STATUSES)
        require_cents("amount", amount, allow_zero=False, allow_negative=(type == "ADJUSTMENT"))

        now = utcnow()
        txn = PaymentTransaction(
            payment_id=payment_id,
            type=type,
            amount=amount,
            status=status,
            external_transaction_id=external_transaction_id,
            external_reference=external_reference,
            description=description,
            metadata_json=metadata or {},
            processed_at=processed_at or (now if status == "COMPLETED" else None),
            failed_at=now if status == "FAILED" else None,
            created_at=now,
        )
        self.session.add(txn)
        self.session.flush()
        return txn

    def list_transactions(self, payment_id: int) -> list[PaymentTransaction]:
        return (
            self.session.query(PaymentTransaction)
            .filter_by(payment_id=payment_id)
            .order_by(PaymentTransaction.id)
            .all()
        )

    def insert_reminder(
        self,
        payment_id: int,
        *,
        type: str,
        method: str,
        scheduled_at: datetime,
        subject: str | None = None,
        message: str | None = None,
    ) -> PaymentReminder:
        _check_member("reminder type", type, REMINDER_TYPES)
        _check_member("reminder method", method, REMINDER_METHODS)
        if scheduled_at is None:
            raise ValidationError("scheduled_at is required")

        reminder = PaymentReminder(
            payment_id=payment_id,
            type=type,
            method=method,
            scheduled_at=scheduled_at,
            subject=subject,
            message=message,
            status="SCHEDULED",
        )
        self.session.add(reminder)
        self.session.flush()
        return reminder

    def list_reminders(self, payment_id: int, status: str | None = None) -> list[PaymentReminder]:
        query = self.session.query(PaymentReminder).filter_by(payment_id=payment_id)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(PaymentReminder.scheduled_at, PaymentReminder.id).all()

    def get_reminder(self, reminder_id: int) -> PaymentReminder | None:
        return self.session.get(PaymentReminder, reminder_id)

    def update_reminder(
        self,
        reminder: PaymentReminder,
        *,
        status: str,
        sent_at: datetime | None = None,
        failure_reason: str | None = None,
    ) -> PaymentReminder:
        _check_member("reminder status", status, REMINDER_STATUSES)
        reminder.status = status
        if sent_at is not None:
            reminder.sent_at = sent_at
        if failure_reason is not None:
            reminder.failure_reason = failure_reason
        self.session.flush()
        return reminder

    def cancel_scheduled_reminders(self, payment_id: int) -> int:
        """Cancel every still-SCHEDULED reminder of a payment; returns how many."""
        reminders = self.list_reminders(payment_id, status="SCHEDULED")
        for reminder in reminders:
            reminder.status = "CANCELED"
        self.session.flush()
        return len(reminders)

    # =========================================================================
    # WEBHOOK EVENTS
    # =========================================================================

    def log_webhook_event(
        self,
        *,
        event_type: str,
        event_id: str,
        source: str,
        payload: dict,
    ) -> tuple[PaymentWebhookEvent, bool]:
        """
        Persist an inbound event, keyed by (source, event_id).

        Returns (event, created). A redelivery returns the existing row with
        delivery_count bumped; the raw payload of the first delivery is kept.
        """
        if not event_id:
            raise ValidationError("event_id is required")

        existing = self.get_webhook_event(source=source, event_id=event_id)
        if existing is not None:
            existing.delivery_count = (existing.delivery_count or 0) + 1
            self.session.flush()
            return existing, False

        event = PaymentWebhookEvent(
            event_type=event_type or "unknown",
            event_id=event_id,
            source=source,
            raw_payload=payload if isinstance(payload, dict) else {"value": payload},
            status=WEBHOOK_STATUS_PENDING,
            retry_count=0,
            delivery_count=1,
        )
        try:
            with self.session.begin_nested():
                self.session.add(event)
                self.session.flush()
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            existing = self.get_webhook_event(source=source, event_id=event_id)
            if existing is None:
                raise
            existing.delivery_count = (existing.delivery_count or 0) + 1
            self.session.flush()
            return existing, False
        return event, True

    def get_webhook_event(self, *, source: str, event_id: str, for_update: bool = False) -> PaymentWebhookEvent | None:
        query = self.session.query(PaymentWebhookEvent).filter_by(source=source, event_id=event_id)
        if for_update:
            query = lock_for_update(query)
        return query.first()

    def mark_webhook_event_processed(
        self,
        event: PaymentWebhookEvent,
        *,
        payment_id: int | None = None,
        processed_payload: dict | None = None,
    ) -> PaymentWebhookEvent:
        event.status = WEBHOOK_STATUS_PROCESSED
        event.payment_id = payment_id if payment_id is not None else event.payment_id
        event.processed_payload = processed_payload
        event.processed_at = utcnow()
        event.failure_reason = None
        self.session.flush()
        return event

    def mark_webhook_event_ignored(
        self,
        event: PaymentWebhookEvent,
        *,
        reason: str,
        payment_id: int | None = None,
    ) -> PaymentWebhookEvent:
        event.status = WEBHOOK_STATUS_IGNORED
        event.payment_id = payment_id if payment_id is not None else event.payment_id
        event.processed_at = utcnow()
        event.failure_reason = reason
        self.session.flush()
        return event

    def mark_webhook_event_failed(self, event: PaymentWebhookEvent, *, reason: str) -> PaymentWebhookEvent:
        event.status = WEBHOOK_STATUS_FAILED
        event.failure_reason = reason
        event.retry_count = (event.retry_count or 0) + 1
        self.session.flush()
        return event

    def list_webhook_events(self, *, status: str | None = None, limit: int = 100) -> list[PaymentWebhookEvent]:
        query = self.session.query(PaymentWebhookEvent)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(PaymentWebhookEvent.created_at, PaymentWebhookEvent.id).limit(limit).all()
