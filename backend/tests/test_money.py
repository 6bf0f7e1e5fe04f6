from decimal import Decimal

import pytest

from ark_billing.errors import ValidationError
from ark_billing.money import (
    cents_to_dollars,
    dollars_to_cents,
    format_cents,
    require_cents,
    tax_for,
)


def test_dollars_to_cents():
    assert dollars_to_cents(Decimal("500.00")) == 50000
    assert dollars_to_cents("275.5") == 27550
    assert dollars_to_cents(500.1) == 50010
    assert dollars_to_cents("0.005") == 1


def test_dollars_to_cents_rejects_garbage():
    for bad in (None, True, "abc", "NaN"):
        with pytest.raises(ValidationError):
            dollars_to_cents(bad)


def test_tax_rounds_half_up():
    assert tax_for(50000, 800) == 4000
    # 8% of $0.06 is 0.48 cents, of $0.07 is 0.56 cents
    assert tax_for(6, 800) == 0
    assert tax_for(7, 800) == 1
    assert tax_for(27550, 800) == 2204


def test_require_cents_is_strict():
    assert require_cents("amount", 100) == 100
    with pytest.raises(ValidationError):
        require_cents("amount", 1.5)
    with pytest.raises(ValidationError):
        require_cents("amount", "100")
    with pytest.raises(ValidationError):
        require_cents("amount", -1)
    with pytest.raises(ValidationError):
        require_cents("amount", 0, allow_zero=False)
    assert require_cents("amount", -250, allow_negative=True) == -250


def test_display_helpers():
    assert cents_to_dollars(54000) == Decimal("540.00")
    assert cents_to_dollars(None) is None
    assert format_cents(123456) == "$1,234.56"
    assert format_cents(-500) == "-$5.00"
