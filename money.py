import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from errors import InvalidInput

MajorAmount = Union[int, float, str, Decimal]

CURRENCY_SYMBOLS = {"PHP": "₱", "USD": "$", "EUR": "€"}
# One trillion pesos. Sums of many such rows still fit a signed 64-bit column.
MAX_MINOR_UNITS = 10**14


def to_minor_units(amount: MajorAmount) -> int:
    """Convert a major-unit amount (pesos) to integer minor units (centavos).

    Rounds half away from zero at the cent, so 0.005 becomes 1 and 123.45
    becomes 12345. Floats go through ``str`` first to avoid binary noise.
    """
    if isinstance(amount, bool):
        raise InvalidInput("Invalid amount")
    if isinstance(amount, float) and not math.isfinite(amount):
        raise InvalidInput("Invalid amount")
    if isinstance(amount, str):
        clean = amount.strip().replace(",", "").replace(" ", "")
        for symbol in CURRENCY_SYMBOLS.values():
            clean = clean.replace(symbol, "")
    else:
        clean = str(amount)
    try:
        value = Decimal(clean)
    except InvalidOperation as exc:
        raise InvalidInput("Invalid amount") from exc
    if not value.is_finite():
        raise InvalidInput("Invalid amount")
    if abs(value) * 100 > MAX_MINOR_UNITS:
        raise InvalidInput("Amount is too large")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> float:
    return cents / 100


def format_minor_units(cents: int, currency: str = "PHP") -> str:
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), currency.upper() + " ")
    sign = "-" if cents < 0 else ""
    return f"{sign}{symbol}{abs(cents) / 100:,.2f}"
