"""Display formatting for prices and phone numbers (pt-BR conventions)."""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from utils.text import digits_only

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_price(value) -> str:
    """Decimal('1234.5') → 'R$ 1.234,50'."""
    amount = to_money(value)
    integer, _, cents = f"{amount:,.2f}".partition(".")
    return f"R$ {integer.replace(',', '.')},{cents}"


def format_phone(value: str) -> str:
    """
    Format a Brazilian number as (XX) XXXXX-XXXX / (XX) XXXX-XXXX.
    A leading 55 country code is dropped; anything else is returned as digits.
    """
    digits = digits_only(value)
    if len(digits) in (12, 13) and digits.startswith("55"):
        digits = digits[2:]
    if len(digits) == 11:
        return f"({digits[:2]}) {digits[2:7]}-{digits[7:]}"
    if len(digits) == 10:
        return f"({digits[:2]}) {digits[2:6]}-{digits[6:]}"
    return digits
