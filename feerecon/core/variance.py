# feerecon/core/variance.py

"""
Variance and tolerance arithmetic.

variance            = line item amount - expected amount
variance_percentage = variance / expected * 100   (0 when expected <= 0)
within tolerance    = |variance_percentage| <= tolerance

Expected amounts of zero or less never pass a finite tolerance. They can
still be paired by hand, but only an unbounded tolerance accepts them.
"""

from decimal import Decimal
from typing import Any, Iterable

from feerecon.models import MatchQuality, PendingMatch, VarianceDistribution, VarianceResult
from feerecon.models.money import HALF_MINOR_UNIT, ZERO, is_infinite, to_money, to_tolerance

HUNDRED = Decimal("100")

# Quality bands
GOOD_BAND = Decimal("2")


def variance_percentage(variance: Decimal, expected_amount: Decimal) -> Decimal:
    if expected_amount > 0:
        return variance / expected_amount * HUNDRED
    return Decimal("0")


def evaluate(
    line_item_amount: Any,
    expected_amount: Any,
    tolerance_percent: Any,
) -> VarianceResult:
    """Compare a line item amount with an expected amount at a tolerance."""
    line_item_amount = to_money(line_item_amount)
    expected_amount = to_money(expected_amount)
    tolerance = to_tolerance(tolerance_percent)

    variance = line_item_amount - expected_amount
    percentage = variance_percentage(variance, expected_amount)

    if expected_amount > 0:
        within = is_within(percentage, tolerance)
    else:
        within = is_infinite(tolerance)

    return VarianceResult(
        variance=variance,
        variance_percentage=percentage,
        is_within_tolerance=within,
    )


def is_within(percentage: Decimal, tolerance: Decimal) -> bool:
    if is_infinite(tolerance):
        return True
    return abs(percentage) <= tolerance


def is_exact(variance: Any) -> bool:
    """Currency-identical: less than half a minor unit apart."""
    return abs(Decimal(variance)) < HALF_MINOR_UNIT


def classify_quality(percentage: Decimal, tolerance: Any) -> MatchQuality:
    tolerance = to_tolerance(tolerance)
    absolute = abs(percentage)

    if absolute == 0:
        return MatchQuality.PERFECT
    if absolute <= GOOD_BAND:
        return MatchQuality.GOOD
    if is_within(absolute, tolerance):
        return MatchQuality.ACCEPTABLE
    return MatchQuality.WARNING


def variance_distribution(matches: Iterable[PendingMatch]) -> VarianceDistribution:
    """Bucket candidate pairs by variance for the prescreening audit log."""
    dist = VarianceDistribution()

    for match in matches:
        dist.total += 1
        pct = abs(match.variance_percentage)

        if is_exact(match.variance):
            dist.exact += 1
        elif pct <= Decimal("0.5"):
            dist.within_0_5 += 1
        elif pct <= 1:
            dist.within_1 += 1
        elif pct <= 2:
            dist.within_2 += 1
        elif pct <= 5:
            dist.within_5 += 1
        else:
            dist.over_5 += 1

    return dist


def aggregate(pairs: Iterable[PendingMatch]) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    """
    Totals over a set of staged pairs.

    Returns (total_line_item_amount, total_expected_amount, variance, variance_percentage).
    """
    total_line = ZERO
    total_expected = ZERO
    for pair in pairs:
        total_line += pair.line_item_amount
        total_expected += pair.expected_amount

    variance = total_line - total_expected
    return total_line, total_expected, variance, variance_percentage(variance, total_expected)
