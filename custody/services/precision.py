"""Fixed-point helpers for the single base currency.

Display amounts carry exactly DECIMALS fractional digits; the chain speaks in
integer base units (10**DECIMALS per display unit). Conversions from base
units always floor so a deposit can never be credited above what arrived.
"""
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN

from custody.core.errors import InvalidAmount

DECIMALS = 6
UNITS_PER_COIN = 10 ** DECIMALS
QUANT = Decimal(1).scaleb(-DECIMALS)
ZERO = Decimal("0").quantize(QUANT)


def _to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if isinstance(value, float):
        # repr() of a float is the shortest string that round-trips.
        value = repr(value)
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount(f"Invalid amount: {value!r}") from exc


def parse_amount(value) -> Decimal:
    """Validate a user-supplied amount without rounding it."""
    amount = _to_decimal(value)
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if amount <= 0:
        raise InvalidAmount(f"Amount must be positive: {value}")
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and -exponent > DECIMALS:
        raise InvalidAmount(
            f"Invalid amount precision: {value} has more than {DECIMALS} decimal places"
        )
    return amount.quantize(QUANT)


def as_amount(value) -> Decimal:
    if value is None:
        return ZERO
    # SQLite hands NUMERIC columns back as float; half-even recovers the stored value.
    return _to_decimal(value).quantize(QUANT, rounding=ROUND_HALF_EVEN)


def to_base_units(amount) -> int:
    amount = parse_amount(amount)
    return int(amount.scaleb(DECIMALS))


def from_base_units(units) -> Decimal:
    try:
        units = int(units)
    except (TypeError, ValueError) as exc:
        raise InvalidAmount(f"Base-unit amount must be an integer, got {units!r}") from exc
    if units < 0:
        raise InvalidAmount(f"Base-unit amount must not be negative, got {units}")
    return (Decimal(units) / Decimal(UNITS_PER_COIN)).quantize(QUANT, rounding=ROUND_DOWN)


def format_amount(amount) -> str:
    return f"{as_amount(amount):.{DECIMALS}f}"
