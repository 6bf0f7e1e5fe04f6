# Overview: Read-only order lookup used to seed payments.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Protocol

from ..errors import NotFoundError
from ..models import Order
from ..money import dollars_to_cents


@dataclass(frozen=True)
class OrderSnapshot:
    """
    Immutable view of an order at the moment billing reads it.

    Prices are integer cents (None when the order has not been priced).
    """
    id: int
    order_number: str
    first_name: str
    last_name: str | None
    email: str
    phone: str | None
    address: str | None
    city: str | None
    state: str | None
    zip: str | None
    dumpster_size: str | None
    quoted_price: int | None
    final_price: int | None
    scheduled_delivery_date: date | None = None
    scheduled_pickup_date: date | None = None
    address2: str | None = None
    internal_notes: str | None = None

    @property
    def customer_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @property
    def priced_total(self) -> int | None:
        """Final price when set, else the quote."""
        if self.final_price:
            return self.final_price
        if self.quoted_price:
            return self.quoted_price
        return None

    @property
    def full_address(self) -> str:
        street = ", ".join(p for p in (self.address, self.address2) if p)
        locality = " ".join(p for p in (self.state, self.zip) if p)
        return ", ".join(p for p in (street, self.city, locality) if p)

    @classmethod
    def from_model(cls, order: Order) -> "OrderSnapshot":
        return cls(
            id=order.id,
            order_number=order.order_number,
            first_name=order.first_name,
            last_name=order.last_name,
            email=order.email,
            phone=order.phone,
            address=order.address,
            city=order.city,
            state=order.state,
            zip=order.zip_code,
            dumpster_size=order.dumpster_size,
            quoted_price=dollars_to_cents(order.quoted_price) if order.quoted_price is not None else None,
            final_price=dollars_to_cents(order.final_price) if order.final_price is not None else None,
            scheduled_delivery_date=order.scheduled_delivery_date,
            scheduled_pickup_date=order.scheduled_pickup_date,
            address2=order.address2,
            internal_notes=order.internal_notes,
        )


class OrderSource(Protocol):
    def get_order(self, order_id: int) -> OrderSnapshot: ...


class SqlOrderSource:
    """Order source backed by the local orders table."""

    def __init__(self, session):
        self.session = session

    def get_order(self, order_id: int) -> OrderSnapshot:
        order = self.session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return OrderSnapshot.from_model(order)
