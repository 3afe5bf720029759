# feerecon/core/auto_match.py

"""
Single-pass auto-matching by plan reference.

The join is exact equality of trimmed, non-empty plan references. Line items
are walked in payment order and each takes the first expectation with the same
reference that nobody has claimed yet (first-fit, not best-fit).
"""

from typing import TYPE_CHECKING, Iterable
import logging

from feerecon.models import (
    DataQualityReport,
    Expectation,
    ExpectationStatus,
    LineItemStatus,
    PaymentLineItem,
    PendingMatch,
)
from feerecon.core.variance import evaluate

if TYPE_CHECKING:
    from feerecon.core.session import ReconciliationSession

logger = logging.getLogger(__name__)


class CandidatePool:
    """Unmatched, unstaged records eligible for a reference join."""

    def __init__(
        self,
        line_items: list[PaymentLineItem],
        expectations: list[Expectation],
    ):
        self.line_items = line_items
        self.expectations = expectations

    @property
    def joinable_expectations(self) -> list[Expectation]:
        # Non-positive amounts have no usable percentage, so they never auto-join
        return [e for e in self.expectations if e.has_usable_amount]

    def data_quality(self) -> DataQualityReport:
        return DataQualityReport(
            non_positive_expectations=len(
                [e for e in self.expectations if not e.has_usable_amount]
            ),
            blank_reference_line_items=len(
                [li for li in self.line_items if not li.join_key]
            ),
        )


def candidate_pool(session: "ReconciliationSession") -> CandidatePool:
    """Build the pool for the selected payment. Empty when nothing is selected."""
    payment = session.selected_payment
    if payment is None:
        return CandidatePool([], [])

    staging = session.staging

    line_items = [
        li for li in payment.line_items
        if li.status == LineItemStatus.UNMATCHED and not staging.has_line_item(li.id)
    ]
    expectations = [
        e for e in session.expectations
        if e.provider_name == payment.provider_name
        and e.status == ExpectationStatus.UNMATCHED
        and not staging.has_expectation(e.id)
    ]

    return CandidatePool(line_items, expectations)


def find_reference_joins(
    line_items: Iterable[PaymentLineItem],
    expectations: Iterable[Expectation],
) -> list[tuple[PaymentLineItem, Expectation]]:
    """
    Pair line items with expectations by plan reference, first-fit.

    Each line item and each expectation is claimed at most once.
    """
    by_reference: dict[str, list[Expectation]] = {}
    for expectation in expectations:
        key = expectation.join_key
        if not key:
            continue
        by_reference.setdefault(key, []).append(expectation)

    claimed: set[str] = set()
    joins: list[tuple[PaymentLineItem, Expectation]] = []

    for line_item in line_items:
        key = line_item.join_key
        if not key:
            continue

        for expectation in by_reference.get(key, []):
            if expectation.id in claimed:
                continue
            claimed.add(expectation.id)
            joins.append((line_item, expectation))
            break

    return joins


def auto_match(session: "ReconciliationSession") -> list[PendingMatch]:
    """
    Stage every reference join within the session tolerance.

    Out-of-tolerance joins are skipped without being reported; those line
    items stay unmatched for manual handling.
    """
    pool = candidate_pool(session)
    if not pool.line_items:
        return []

    staged: list[PendingMatch] = []
    skipped = 0

    for line_item, expectation in find_reference_joins(pool.line_items, pool.joinable_expectations):
        result = evaluate(line_item.amount, expectation.expected_amount, session.tolerance)
        if not result.is_within_tolerance:
            skipped += 1
            continue

        pending = session.add(line_item.id, expectation.id)
        if pending is not None:
            staged.append(pending)

    logger.info(
        f"Auto-match staged {len(staged)} pairs "
        f"({skipped} outside tolerance) for payment {session.selected_payment_id}"
    )

    return staged
