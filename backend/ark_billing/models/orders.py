from __future__ import annotations

from ..extensions import db
from ark_billing.money import dollars_to_cents
from ark_billing.time_utils import to_utc_z, to_iso_date, utcnow


class Order(db.Model):
    """
    Dumpster rental order (read-only from the billing side).

    Orders are owned by the order-management part of the application; billing
    only reads them through the order source to seed payments. Prices are
    stored in decimal dollars exactly as the order system writes them.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    # Customer
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    phone = db.Column(db.String(32), nullable=True)

    # Service address
    address = db.Column(db.String(255), nullable=True)
    address2 = db.Column(db.String(255), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(32), nullable=True)
    zip_code = db.Column(db.String(16), nullable=True)

    dumpster_size = db.Column(db.String(32), nullable=True)
    status = db.Column(db.String(32), nullable=False, default="PENDING", index=True)

    # Pricing (dollars)
    quoted_price = db.Column(db.Numeric(10, 2), nullable=True)
    final_price = db.Column(db.Numeric(10, 2), nullable=True)

    internal_notes = db.Column(db.Text, nullable=True)

    scheduled_delivery_date = db.Column(db.Date, nullable=True)
    scheduled_pickup_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r}>"

    @property
    def customer_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "address2": self.address2,
            "city": self.city,
            "state": self.state,
            "zip": self.zip_code,
            "dumpster_size": self.dumpster_size,
            "status": self.status,
            "quoted_price_cents": dollars_to_cents(self.quoted_price) if self.quoted_price is not None else None,
            "final_price_cents": dollars_to_cents(self.final_price) if self.final_price is not None else None,
            "scheduled_delivery_date": to_iso_date(self.scheduled_delivery_date),
            "scheduled_pickup_date": to_iso_date(self.scheduled_pickup_date),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
