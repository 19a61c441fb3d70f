"""Amount matching with a symmetric tolerance band and asymmetric policy.

A payment matches when ``|received - expected| <= tolerance * expected``.
Outside the band an overpayment is still accepted and credited, while an
underpayment is rejected and left for manual review.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

EXACT = "exact"
WITHIN_TOLERANCE = "within_tolerance"
OVERPAYMENT = "overpayment"
UNDERPAYMENT = "underpayment"

DEFAULT_TOLERANCE = Decimal("0.02")

_HUNDRED = Decimal("100")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class MatchResult:
    is_match: bool
    received_amount: Decimal
    expected_amount: Decimal
    difference: Decimal
    percent_difference: Decimal
    kind: str
    received_usd: Decimal | None = None

    @property
    def accepted(self) -> bool:
        """Whether the payment may be credited (a match or an overpayment)."""
        return self.kind != UNDERPAYMENT

    def note(self) -> str | None:
        if self.kind == OVERPAYMENT:
            return (
                f"Overpayment of {self.difference.normalize():f} "
                f"({self.percent_difference.quantize(_CENT):f}% above expected)"
            )
        if self.kind == UNDERPAYMENT:
            return (
                f"Underpayment of {(-self.difference).normalize():f} "
                f"({self.percent_difference.quantize(_CENT):f}% below expected)"
            )
        return None


def _as_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def match_amount(
    received,
    expected,
    reference_usd=None,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> MatchResult:
    received_d = _as_decimal(received)
    expected_d = _as_decimal(expected)
    if expected_d <= 0:
        raise ValueError("expected amount must be positive")

    difference = received_d - expected_d
    percent = abs(difference) / expected_d * _HUNDRED
    is_match = abs(difference) <= _as_decimal(tolerance) * expected_d

    if difference == 0:
        kind = EXACT
    elif is_match:
        kind = WITHIN_TOLERANCE
    elif difference > 0:
        kind = OVERPAYMENT
    else:
        kind = UNDERPAYMENT

    received_usd = None
    if reference_usd is not None:
        received_usd = (_as_decimal(reference_usd) * received_d / expected_d).quantize(_CENT, rounding=ROUND_HALF_UP)

    return MatchResult(
        is_match=is_match,
        received_amount=received_d,
        expected_amount=expected_d,
        difference=difference,
        percent_difference=percent,
        kind=kind,
        received_usd=received_usd,
    )


def from_base_units(value: int | str, decimals: int) -> Decimal:
    """Convert an integer amount in the chain's smallest unit to coin units."""
    return Decimal(int(value)).scaleb(-decimals)


def to_base_units(amount, decimals: int) -> int:
    return int(_as_decimal(amount).scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))
