import pytest

from ark_billing.errors import InvalidTransitionError
from ark_billing.services.payment_states import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    VALID_STATUSES,
    can_apply,
    is_terminal,
    require_transition,
)


def test_happy_path_transitions():
    assert require_transition("remote_invoice_created", "DRAFT") == "DRAFT"
    assert require_transition("mark_sent", "DRAFT") == "SENT"
    assert require_transition("invoice_viewed", "SENT") == "VIEWED"
    assert require_transition("partial_payment", "VIEWED") == "PARTIALLY_PAID"
    assert require_transition("full_payment", "PARTIALLY_PAID") == "PAID"
    assert require_transition("refund", "PAID") == "REFUNDED"


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
def test_nothing_but_refund_leaves_a_terminal_state(status):
    for event in TRANSITIONS:
        if event == "refund" and status == "PAID":
            continue
        assert not can_apply(event, status), f"{event} should not apply to {status}"


def test_no_downgrade_after_payment():
    for status in ("PARTIALLY_PAID", "PAID"):
        assert not can_apply("mark_sent", status)
        assert not can_apply("invoice_viewed", status)
        assert not can_apply("mark_overdue", status)


def test_overdue_only_from_sent_or_viewed():
    allowed = {s for s in VALID_STATUSES if can_apply("mark_overdue", s)}
    assert allowed == {"SENT", "VIEWED"}


def test_overdue_invoice_can_still_be_paid_or_canceled():
    assert require_transition("partial_payment", "OVERDUE") == "PARTIALLY_PAID"
    assert require_transition("full_payment", "OVERDUE") == "PAID"
    assert require_transition("cancel", "OVERDUE") == "CANCELED"


def test_rejected_transition_carries_event_and_status():
    with pytest.raises(InvalidTransitionError) as exc:
        require_transition("mark_sent", "PAID")
    assert exc.value.event == "mark_sent"
    assert exc.value.current_status == "PAID"
    assert exc.value.http_status == 409


def test_unknown_event_is_rejected():
    with pytest.raises(InvalidTransitionError):
        require_transition("teleport", "DRAFT")
    assert not can_apply("teleport", "DRAFT")


def test_unknown_status_is_a_value_error():
    with pytest.raises(ValueError):
        require_transition("mark_sent", "LOST")


def test_is_terminal():
    assert is_terminal("CANCELED")
    assert not is_terminal("OVERDUE")
