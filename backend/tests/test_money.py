from decimal import Decimal

import pytest

from pos_engine.errors import ValidationError
from pos_engine.money import format_money, percent_of, quantize_money, sum_money, to_decimal
from pos_engine.validation import coerce_int, coerce_money, require_actor


def test_to_decimal_goes_through_text_for_floats():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("19.99") == Decimal("19.99")
    assert to_decimal(None) == Decimal("0")


@pytest.mark.parametrize("bad", [True, "abc", "NaN", float("inf")])
def test_to_decimal_rejects_non_amounts(bad):
    with pytest.raises(ValueError):
        to_decimal(bad)


def test_quantize_is_half_up():
    assert quantize_money("2.675") == Decimal("2.68")
    assert quantize_money("2.665") == Decimal("2.67")
    assert quantize_money("-0.005") == Decimal("-0.01")
    assert quantize_money("18.1818") == Decimal("18.18")


def test_percent_of_keeps_full_precision():
    assert percent_of("33.33", "7.5") == Decimal("2.499750")
    assert sum_money(["0.10", "0.20", 0.3]) == Decimal("0.60")
    assert format_money("5") == "5.00"


def test_coerce_money_limits_places_and_sign():
    assert coerce_money("10.50", "amount") == Decimal("10.50")
    with pytest.raises(ValidationError):
        coerce_money("10.505", "amount")
    with pytest.raises(ValidationError):
        coerce_money("-1", "amount")
    with pytest.raises(ValidationError):
        coerce_money("0", "amount", allow_zero=False)


def test_coerce_int_is_strict():
    assert coerce_int("12", "quantity") == 12
    for bad in ("2.5", "1e3", 2.0, True, ""):
        with pytest.raises(ValidationError):
            coerce_int(bad, "quantity")


def test_actor_is_required():
    assert require_actor(7) == 7
    for missing in (None, "", "  "):
        with pytest.raises(ValidationError):
            require_actor(missing)
