from __future__ import annotations

from ..extensions import db
from ark_billing.time_utils import utcnow


class PaymentSequence(db.Model):
    """
    Atomic per-tenant payment number sequence.

    WHY: payment_number must be unique and monotonic per tenant even when
    two invoices are created at the same time.
    """
    __tablename__ = "payment_sequences"
    __table_args__ = (
        db.UniqueConstraint("tenant_code", name="uq_payment_sequences_tenant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_code = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
