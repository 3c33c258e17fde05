from decimal import Decimal

import pytest

from custody.core.errors import InvalidAmount
from custody.services.precision import as_amount, format_amount, from_base_units, parse_amount, to_base_units


def test_parse_amount_accepts_six_decimals():
    assert parse_amount("1.123456") == Decimal("1.123456")


def test_parse_amount_rejects_seven_decimals():
    with pytest.raises(InvalidAmount):
        parse_amount("1.1234567")


def test_parse_amount_allows_trailing_zeros_past_precision():
    assert parse_amount("2.50000000") == Decimal("2.500000")


@pytest.mark.parametrize("value", ["0", "-1", "abc", "NaN", "Infinity", "", True])
def test_parse_amount_rejects_invalid_values(value):
    with pytest.raises(InvalidAmount):
        parse_amount(value)


def test_parse_amount_uses_float_repr():
    assert parse_amount(0.1) == Decimal("0.100000")


def test_base_unit_conversion_is_exact():
    assert to_base_units("10") == 10_000_000
    assert to_base_units("0.000001") == 1
    assert from_base_units(10_000_000) == Decimal("10.000000")


def test_from_base_units_rejects_negative_and_non_integers():
    with pytest.raises(InvalidAmount):
        from_base_units(-1)
    with pytest.raises(InvalidAmount):
        from_base_units("12ujuno")


def test_as_amount_recovers_float_noise():
    assert as_amount(0.30000000000000004) == Decimal("0.300000")
    assert as_amount(0.29999999999999999) == Decimal("0.300000")
    assert as_amount(None) == Decimal("0.000000")


def test_format_amount_is_fixed_width():
    assert format_amount(Decimal("5")) == "5.000000"
