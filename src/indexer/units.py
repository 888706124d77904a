"""Atomic vs. display unit types and the single normalizer that converts them.

Ledger amounts arrive as integers in the token's smallest unit (micro-USDC,
micro-tokens). Human-facing aggregates (reserves, vault balance, deposit
amounts) are stored as Decimal display units. Mixing the two silently is the
classic 10^6 scale bug, so each magnitude gets its own frozen type and only
UnitNormalizer may move a value between them.

CRITICAL: Display values are Decimal. Never use float for amounts.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext

from indexer.exceptions import UnitConversionError

MILLIONTHS = Decimal(1_000_000)

# u128 ledger values have up to 39 digits; leave room for the fraction
_PRECISION = 60


@dataclass(frozen=True, order=True)
class AtomicAmount:
    """Integer amount in the ledger's smallest unit."""

    value: int

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise TypeError(f"AtomicAmount requires int, got {type(self.value).__name__}")

    def __add__(self, other: AtomicAmount) -> AtomicAmount:
        if not isinstance(other, AtomicAmount):
            return NotImplemented
        return AtomicAmount(self.value + other.value)

    def __sub__(self, other: AtomicAmount) -> AtomicAmount:
        if not isinstance(other, AtomicAmount):
            return NotImplemented
        return AtomicAmount(self.value - other.value)

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True, order=True)
class DisplayAmount:
    """Human-readable decimal amount."""

    value: Decimal

    def __post_init__(self) -> None:
        if not isinstance(self.value, Decimal):
            raise TypeError(f"DisplayAmount requires Decimal, got {type(self.value).__name__}")

    def __add__(self, other: DisplayAmount) -> DisplayAmount:
        if not isinstance(other, DisplayAmount):
            return NotImplemented
        return DisplayAmount(self.value + other.value)

    def __sub__(self, other: DisplayAmount) -> DisplayAmount:
        if not isinstance(other, DisplayAmount):
            return NotImplemented
        return DisplayAmount(self.value - other.value)

    def __str__(self) -> str:
        return str(self.value)


class UnitNormalizer:
    """Converts between atomic and display magnitudes for a fixed decimal count.

    Args:
        decimals: Number of decimals of the token (USDC and pool tokens use 6).
    """

    def __init__(self, decimals: int = 6) -> None:
        self._decimals = decimals
        self._scale = Decimal(10) ** decimals
        self._quantum = Decimal(1).scaleb(-decimals)

    @property
    def decimals(self) -> int:
        return self._decimals

    def to_display(self, amount: AtomicAmount | int) -> DisplayAmount:
        """Exact atomic -> display conversion (25 -> 0.000025)."""
        raw = amount.value if isinstance(amount, AtomicAmount) else amount
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return DisplayAmount((Decimal(raw) / self._scale).quantize(self._quantum))

    def to_atomic(self, amount: DisplayAmount | Decimal) -> AtomicAmount:
        """Display -> atomic conversion, rounding half-up to the nearest unit."""
        raw = amount.value if isinstance(amount, DisplayAmount) else amount
        if not raw.is_finite() or raw < 0:
            raise UnitConversionError(f"Invalid display amount: {raw}")
        try:
            with localcontext() as ctx:
                ctx.prec = _PRECISION
                scaled = (raw * self._scale).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        except InvalidOperation as e:
            raise UnitConversionError(f"Cannot convert {raw} to atomic units") from e
        return AtomicAmount(int(scaled))

    @staticmethod
    def from_millionths(value: int) -> Decimal:
        """Decode a millionths-scaled ratio (500_000 -> 0.5)."""
        return Decimal(value) / MILLIONTHS
