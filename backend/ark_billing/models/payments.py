from __future__ import annotations

from ..extensions import db
from ark_billing.money import cents_to_dollars
from ark_billing.time_utils import to_utc_z, to_iso_date, utcnow


def _display(cents: int | None) -> str | None:
    dollars = cents_to_dollars(cents)
    return f"{dollars:.2f}" if dollars is not None else None


class Payment(db.Model):
    """
    Billing record for one invoicing attempt against one order.

    WHY: An order can be billed more than once (deposit + balance, a canceled
    invoice followed by a new one), so payments hang off orders 1:N.

    MONEY: every amount is integer cents.
    - total_amount = subtotal_amount + tax_amount
    - paid_amount is cumulative and only moves through payment transactions

    TIMESTAMPS: sent_at, viewed_at, paid_at, failed_at, canceled_at are set
    once by the transition that causes them and never rewound.

    CONCURRENCY: version_id is SQLAlchemy's optimistic lock column; two
    writers of the same payment cannot both commit from the same version.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("tenant_code", "payment_number", name="uq_payments_tenant_number"),
        db.Index("ix_payments_status_due", "status", "due_date"),
        db.Index("ix_payments_order_created", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_code = db.Column(db.String(32), nullable=False, index=True)
    payment_number = db.Column(db.String(32), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    # Classification
    type = db.Column(db.String(32), nullable=False, default="INVOICE", index=True)
    method = db.Column(db.String(32), nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, default="DRAFT", index=True)

    # Money (cents)
    subtotal_amount = db.Column(db.Integer, nullable=False)
    tax_amount = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False)
    paid_amount = db.Column(db.Integer, nullable=False, default=0)
    refunded_amount = db.Column(db.Integer, nullable=False, default=0)

    # Provider linkage (null until the remote invoice exists)
    square_invoice_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    square_invoice_version = db.Column(db.Integer, nullable=True)
    square_payment_id = db.Column(db.String(128), nullable=True)
    square_customer_id = db.Column(db.String(128), nullable=True)
    square_location_id = db.Column(db.String(128), nullable=True)
    invoice_number = db.Column(db.String(64), nullable=True)
    invoice_url = db.Column(db.String(512), nullable=True)
    public_payment_url = db.Column(db.String(512), nullable=True)

    # Timing
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    due_date = db.Column(db.Date, nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    viewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Customer communication
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)
    delivery_method = db.Column(db.String(16), nullable=True)  # EMAIL, SMS, MANUAL

    description = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    # Webhook tracking
    last_webhook_event_id = db.Column(db.String(128), nullable=True)
    last_webhook_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Failure tracking
    failure_reason = db.Column(db.Text, nullable=True)
    failure_code = db.Column(db.String(64), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payments", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def balance_due(self) -> int:
        return max(0, self.total_amount - self.paid_amount)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} number={self.payment_number!r} status={self.status}>"

    def to_dict(self, include_children: bool = False) -> dict:
        data = {
            "id": self.id,
            "tenant_code": self.tenant_code,
            "payment_number": self.payment_number,
            "order_id": self.order_id,
            "type": self.type,
            "method": self.method,
            "status": self.status,
            "subtotal_amount": self.subtotal_amount,
            "tax_amount": self.tax_amount,
            "total_amount": self.total_amount,
            "paid_amount": self.paid_amount,
            "refunded_amount": self.refunded_amount,
            "balance_due": self.balance_due,
            "total_amount_display": _display(self.total_amount),
            "paid_amount_display": _display(self.paid_amount),
            "balance_due_display": _display(self.balance_due),
            "square_invoice_id": self.square_invoice_id,
            "square_invoice_version": self.square_invoice_version,
            "square_payment_id": self.square_payment_id,
            "square_customer_id": self.square_customer_id,
            "square_location_id": self.square_location_id,
            "invoice_number": self.invoice_number,
            "invoice_url": self.invoice_url,
            "public_payment_url": self.public_payment_url,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "due_date": to_iso_date(self.due_date),
            "sent_at": to_utc_z(self.sent_at),
            "viewed_at": to_utc_z(self.viewed_at),
            "paid_at": to_utc_z(self.paid_at),
            "failed_at": to_utc_z(self.failed_at),
            "canceled_at": to_utc_z(self.canceled_at),
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "delivery_method": self.delivery_method,
            "description": self.description,
            "notes": self.notes,
            "metadata": self.metadata_json or {},
            "last_webhook_event_id": self.last_webhook_event_id,
            "last_webhook_at": to_utc_z(self.last_webhook_at),
            "failure_reason": self.failure_reason,
            "failure_code": self.failure_code,
            "version_id": self.version_id,
        }
        if include_children:
            data["line_items"] = [li.to_dict() for li in self.line_items]
            data["transactions"] = [t.to_dict() for t in self.transactions]
            data["reminders"] = [r.to_dict() for r in self.reminders]
        return data


class PaymentLineItem(db.Model):
    """Itemized charge under a payment. total_price is always unit_price * quantity."""
    __tablename__ = "payment_line_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_payment_line_items_quantity_positive"),
        db.CheckConstraint("total_price = unit_price * quantity", name="ck_payment_line_items_total"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Integer, nullable=False)
    total_price = db.Column(db.Integer, nullable=False)

    # Tax rate as a fraction (0.08 = 8%)
    tax_rate = db.Column(db.Numeric(6, 4), nullable=True)
    tax_amount = db.Column(db.Integer, nullable=True)

    category = db.Column(db.String(64), nullable=True)
    sku = db.Column(db.String(64), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payment = db.relationship(
        "Payment",
        backref=db.backref("line_items", lazy=True, order_by="PaymentLineItem.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total_price": self.total_price,
            "tax_rate": str(self.tax_rate) if self.tax_rate is not None else None,
            "tax_amount": self.tax_amount,
            "category": self.category,
            "sku": self.sku,
            "metadata": self.metadata_json or {},
            "created_at": to_utc_z(self.created_at),
        }


class PaymentTransaction(db.Model):
    """
    Append-only ledger of money movement for a payment.

    TRANSACTION TYPES:
    - CHARGE: money received (amount > 0)
    - REFUND: money returned (amount > 0, direction implied by type)
    - FEE: processing fee (amount > 0)
    - ADJUSTMENT: manual correction (signed, non-zero)

    IMMUTABLE: Never updated once COMPLETED, never deleted.
    """
    __tablename__ = "payment_transactions"
    __table_args__ = (
        db.Index("ix_payment_txns_payment_processed", "payment_id", "processed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(16), nullable=False, default="COMPLETED", index=True)

    external_transaction_id = db.Column(db.String(128), nullable=True, index=True)
    external_reference = db.Column(db.String(128), nullable=True)

    description = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column("metadata", db.JSON, nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    payment = db.relationship(
        "Payment",
        backref=db.backref("transactions", lazy=True, order_by="PaymentTransaction.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "type": self.type,
            "amount": self.amount,
            "amount_display": _display(self.amount),
            "currency": self.currency,
            "status": self.status,
            "external_transaction_id": self.external_transaction_id,
            "external_reference": self.external_reference,
            "description": self.description,
            "metadata": self.metadata_json or {},
            "processed_at": to_utc_z(self.processed_at),
            "failed_at": to_utc_z(self.failed_at),
            "created_at": to_utc_z(self.created_at),
        }


class PaymentReminder(db.Model):
    """Scheduled or sent dunning notice for a payment."""
    __tablename__ = "payment_reminders"
    __table_args__ = (
        db.Index("ix_payment_reminders_status_scheduled", "status", "scheduled_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    type = db.Column(db.String(16), nullable=False)  # INITIAL, FOLLOW_UP, FINAL_NOTICE, OVERDUE
    method = db.Column(db.String(16), nullable=False, default="EMAIL")  # EMAIL, SMS, PHONE, MAIL

    scheduled_at = db.Column(db.DateTime(timezone=True), nullable=False)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    subject = db.Column(db.String(255), nullable=True)
    message = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="SCHEDULED", index=True)
    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payment = db.relationship(
        "Payment",
        backref=db.backref("reminders", lazy=True, order_by="PaymentReminder.scheduled_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "type": self.type,
            "method": self.method,
            "scheduled_at": to_utc_z(self.scheduled_at),
            "sent_at": to_utc_z(self.sent_at),
            "subject": self.subject,
            "message": self.message,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
        }


class PaymentWebhookEvent(db.Model):
    """
    Raw + processed log of every verified provider callback.

    IDEMPOTENCY: (source, event_id) is unique. An event already PROCESSED
    (or IGNORED) is never applied again, however many times it is delivered.
    """
    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        db.UniqueConstraint("source", "event_id", name="uq_payment_webhook_events_source_event"),
        db.Index("ix_payment_webhook_events_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)
    event_id = db.Column(db.String(128), nullable=False)
    source = db.Column(db.String(16), nullable=False, default="SQUARE")

    raw_payload = db.Column(db.JSON, nullable=False)
    processed_payload = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    delivery_count = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    payment = db.relationship("Payment", backref=db.backref("webhook_events", lazy=True))

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            "id": self.id,
            "payment_id": self.payment_id,
            "event_type": self.event_type,
            "event_id": self.event_id,
            "source": self.source,
            "status": self.status,
            "processed_payload": self.processed_payload,
            "processed_at": to_utc_z(self.processed_at),
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "delivery_count": self.delivery_count,
            "created_at": to_utc_z(self.created_at),
        }
        if include_payload:
            data["raw_payload"] = self.raw_payload
        return data
