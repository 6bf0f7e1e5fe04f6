# Overview: Payment status state machine; statuses, events, and the transition table.

"""
Payment Lifecycle State Machine

STATE MACHINE:
    DRAFT -> PENDING -> SENT -> VIEWED -> PARTIALLY_PAID -> PAID
                                 |   \\-> OVERDUE
                                 \\-> CANCELED / FAILED
    PAID / PARTIALLY_PAID -> REFUNDED

    Terminal: PAID, CANCELED, REFUNDED, FAILED.

RULES (NON-NEGOTIABLE):
1. Only transitions listed in TRANSITIONS are allowed.
2. Nothing leaves a terminal state, except REFUND out of PAID.
3. No downgrades: once PARTIALLY_PAID/PAID, never SENT/VIEWED again.
4. A rejected transition never mutates the payment.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from ..errors import InvalidTransitionError


# =============================================================================
# STATUSES
# =============================================================================

STATUS_DRAFT = "DRAFT"
STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_VIEWED = "VIEWED"
STATUS_PARTIALLY_PAID = "PARTIALLY_PAID"
STATUS_PAID = "PAID"
STATUS_OVERDUE = "OVERDUE"
STATUS_CANCELED = "CANCELED"
STATUS_REFUNDED = "REFUNDED"
STATUS_FAILED = "FAILED"

VALID_STATUSES = {
    STATUS_DRAFT,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_VIEWED,
    STATUS_PARTIALLY_PAID,
    STATUS_PAID,
    STATUS_OVERDUE,
    STATUS_CANCELED,
    STATUS_REFUNDED,
    STATUS_FAILED,
}

TERMINAL_STATUSES = frozenset({STATUS_PAID, STATUS_CANCELED, STATUS_REFUNDED, STATUS_FAILED})
NON_TERMINAL_STATUSES = frozenset(VALID_STATUSES - TERMINAL_STATUSES)

# Statuses in which an invoice is still live with the customer
ACTIVE_STATUSES = frozenset({
    STATUS_DRAFT,
    STATUS_PENDING,
    STATUS_SENT,
    STATUS_VIEWED,
    STATUS_PARTIALLY_PAID,
    STATUS_OVERDUE,
})

# Statuses in which the invoice has already reached the customer
DELIVERED_STATUSES = frozenset({
    STATUS_SENT,
    STATUS_VIEWED,
    STATUS_PARTIALLY_PAID,
    STATUS_PAID,
    STATUS_OVERDUE,
})


# =============================================================================
# CLASSIFICATION ENUMS
# =============================================================================

PAYMENT_TYPES = {"INVOICE", "DEPOSIT", "FULL_PAYMENT", "PARTIAL_PAYMENT", "REFUND", "ADJUSTMENT"}
PAYMENT_METHODS = {"SQUARE_INVOICE", "SQUARE_POS", "CASH", "CHECK", "BANK_TRANSFER", "CREDIT_CARD", "OTHER"}
DELIVERY_METHODS = {"EMAIL", "SMS", "SHARE_MANUALLY"}

TRANSACTION_TYPES = {"CHARGE", "REFUND", "ADJUSTMENT", "FEE"}
TRANSACTION_STATUSES = {"PENDING", "COMPLETED", "FAILED", "CANCELED"}

REMINDER_TYPES = {"INITIAL", "FOLLOW_UP", "FINAL_NOTICE", "OVERDUE"}
REMINDER_METHODS = {"EMAIL", "SMS", "PHONE", "MAIL"}
REMINDER_STATUSES = {"SCHEDULED", "SENT", "FAILED", "CANCELED"}

WEBHOOK_STATUS_PENDING = "PENDING"
WEBHOOK_STATUS_PROCESSED = "PROCESSED"
WEBHOOK_STATUS_FAILED = "FAILED"
WEBHOOK_STATUS_IGNORED = "IGNORED"
# Events in these statuses are never applied again
WEBHOOK_FINAL_STATUSES = frozenset({WEBHOOK_STATUS_PROCESSED, WEBHOOK_STATUS_IGNORED})


# =============================================================================
# EVENTS AND TRANSITIONS
# =============================================================================

PaymentEvent = Literal[
    "remote_invoice_created",
    "mark_sent",
    "invoice_viewed",
    "partial_payment",
    "full_payment",
    "cancel",
    "provider_cancel",
    "mark_overdue",
    "refund",
    "charge_failed",
]


@dataclass(frozen=True)
class Transition:
    allowed_from: frozenset
    # None keeps the current status
    to_status: str | None


TRANSITIONS: dict[str, Transition] = {
    "remote_invoice_created": Transition(frozenset({STATUS_DRAFT}), None),
    "mark_sent": Transition(frozenset({STATUS_DRAFT, STATUS_PENDING}), STATUS_SENT),
    "invoice_viewed": Transition(frozenset({STATUS_SENT}), STATUS_VIEWED),
    "partial_payment": Transition(
        frozenset({STATUS_SENT, STATUS_VIEWED, STATUS_PARTIALLY_PAID, STATUS_OVERDUE}),
        STATUS_PARTIALLY_PAID,
    ),
    "full_payment": Transition(NON_TERMINAL_STATUSES, STATUS_PAID),
    "cancel": Transition(
        frozenset({
            STATUS_DRAFT,
            STATUS_PENDING,
            STATUS_SENT,
            STATUS_VIEWED,
            STATUS_PARTIALLY_PAID,
            STATUS_OVERDUE,
        }),
        STATUS_CANCELED,
    ),
    "provider_cancel": Transition(NON_TERMINAL_STATUSES, STATUS_CANCELED),
    "mark_overdue": Transition(frozenset({STATUS_SENT, STATUS_VIEWED}), STATUS_OVERDUE),
    # Target depends on the refund policy; a partial refund may keep the status
    "refund": Transition(frozenset({STATUS_PAID, STATUS_PARTIALLY_PAID}), STATUS_REFUNDED),
    "charge_failed": Transition(
        frozenset({STATUS_SENT, STATUS_VIEWED, STATUS_PARTIALLY_PAID, STATUS_OVERDUE}),
        STATUS_FAILED,
    ),
}


def validate_status(status: str) -> None:
    if status not in VALID_STATUSES:
        raise ValueError(
            f"Invalid status '{status}'. Must be one of: {', '.join(sorted(VALID_STATUSES))}"
        )


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_apply(event: str, current_status: str) -> bool:
    transition = TRANSITIONS.get(event)
    if transition is None:
        return False
    return current_status in transition.allowed_from


def require_transition(event: str, current_status: str) -> str:
    """
    Resolve the status an event moves a payment to.

    Returns the target status (the current status for events that enrich
    without moving). Raises InvalidTransitionError, without side effects,
    when the event is unknown or not allowed from current_status.
    """
    validate_status(current_status)
    transition = TRANSITIONS.get(event)
    if transition is None:
        raise InvalidTransitionError(event, current_status, f"Unknown payment event '{event}'")
    if current_status not in transition.allowed_from:
        raise InvalidTransitionError(event, current_status)
    return transition.to_status or current_status
