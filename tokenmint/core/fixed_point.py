"""
Fixed-point conversions between human-readable amounts and base units.

Every amount that ends up in a signed authorization or an on-chain call
goes through here. Values are handled as Decimal or int only.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Union


AmountLike = Union[str, int, Decimal]

_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?|\.\d+")


class FixedPointError(ValueError):
    """Amount cannot be represented at the requested precision."""
    pass


def _to_decimal(amount: AmountLike) -> Decimal:
    if isinstance(amount, float):
        raise FixedPointError("Floating point amounts are not accepted; pass a str or Decimal")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as e:
        raise FixedPointError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise FixedPointError(f"Invalid amount: {amount!r}")
    return value


def to_base_units(amount: AmountLike, decimals: int) -> int:
    """
    Convert ``"1.25"`` with 6 decimals to ``1250000``.

    Raises FixedPointError when the amount is negative or has more
    fractional digits than ``decimals`` allows.
    """
    value = _to_decimal(amount)
    if value < 0:
        raise FixedPointError(f"Negative amount: {amount!r}")
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise FixedPointError(f"{amount!r} exceeds {decimals} decimal places")
    return int(scaled)


def from_base_units(value: int, decimals: int) -> Decimal:
    """Convert ``1250000`` with 6 decimals to ``Decimal("1.25")``."""
    return Decimal(int(value)).scaleb(-decimals)


def format_units(value: int, decimals: int) -> str:
    """Human-readable amount without trailing zeros."""
    text = format(from_base_units(value, decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def parse_price(text: str) -> Decimal:
    """Extract the numeric price from strings like ``"1 USDC"`` or ``"$0.25"``."""
    match = _NUMBER_RE.search(text or "")
    if not match:
        raise FixedPointError(f"No numeric price in {text!r}")
    return Decimal(match.group(0))


def price_for_quantity(price: AmountLike, quantity: int, decimals: int) -> int:
    """Total base units owed for ``quantity`` items at ``price`` each."""
    if quantity < 1:
        raise FixedPointError(f"Quantity must be positive, got {quantity}")
    if isinstance(price, str) and not _is_plain_number(price):
        price = parse_price(price)
    return to_base_units(price, decimals) * quantity


def _is_plain_number(text: str) -> bool:
    try:
        Decimal(text.strip())
    except InvalidOperation:
        return False
    return True
