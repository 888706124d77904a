"""Fixed-point price conversion for pool sqrt prices.

The pool stores sqrt(price) * 2^96 as a u128. Squaring that overflows
every native float, so the conversion runs in Decimal with enough digits to
hold (2^128)^2 exactly. The result is USDC per display token; micro-units
cancel because both numerator and denominator are 6-decimal assets.
"""

from decimal import Decimal, localcontext

Q96 = 2**96
Q64 = 2**64

# (2^128)^2 has 78 decimal digits
_PRECISION = 80


def sqrt_price_x96_to_price(sqrt_price_x96: int | str) -> Decimal:
    """Convert a Q64.96 sqrt price into a decimal price."""
    raw = int(sqrt_price_x96)
    if raw < 0:
        raise ValueError(f"sqrt price cannot be negative: {raw}")
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return +(Decimal(raw * raw) / Decimal(Q96 * Q96))


def q64_to_decimal(value: int | str) -> Decimal:
    """Convert a Q64.64 fixed-point value (settlement scale factors) to Decimal."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return +(Decimal(int(value)) / Decimal(Q64))
