"""
Shared Money Arithmetic

DESIGN DECISION: Currency is ALWAYS an integer count of minor units
(cents). Quantities and prices are Decimals. The only place a Decimal
becomes money is `round_minor_units`, so every rounding decision in the
system goes through one function.

`compute_plug` lives here because both the dry-run preview and the
committing store path must use the exact same arithmetic.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional


def round_minor_units(value: Decimal) -> int:
    """Round a Decimal amount of minor units half-up to an int."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def market_value(quantity: Decimal, price: Decimal) -> int:
    """Value of `quantity` units at `price` minor units per unit."""
    return round_minor_units(quantity * price)


def compute_plug(previous_ledger_balance: int, new_total_value: int) -> int:
    """
    Delta that brings the ledger balance to the new authoritative value.

    `previous_ledger_balance` must already include any prior plug entry
    for the same snapshot, which is what makes repeated runs converge.
    """
    return new_total_value - previous_ledger_balance


def amounts_are_close(a: int, b: int, tolerance: int) -> bool:
    return abs(a - b) <= tolerance


def is_opposite_sign(a: int, b: int) -> bool:
    return (a >= 0 and b <= 0) or (a <= 0 and b >= 0)


def percent_change(previous: int, current: int) -> float:
    """Percent change from previous to current; 0 when previous isn't positive."""
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * 100


def format_minor_units(amount: int, currency: Optional[str] = None) -> str:
    """Render minor units as a human readable amount (2 decimal places)."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(amount), 100)
    text = f"{sign}{major:,}.{minor:02d}"
    return f"{text} {currency}" if currency else text
