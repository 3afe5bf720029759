# feerecon/core/staging.py

"""
Pending match staging.

An ordered, in-memory set of unconfirmed pairings for the selected payment.
Each line item and each expectation appears in at most one pending match.
"""

from decimal import Decimal
from typing import Iterator, Optional

from feerecon.models import (
    Expectation,
    LineItemStatus,
    PaymentLineItem,
    PendingMatch,
)
from feerecon.core.variance import evaluate


class PendingMatchSet:
    """
    Staged pairs in insertion order.

    generation increases on every clear (switch, confirm, explicit clear), so
    state derived from the staged pairs can tell when it no longer applies.
    """

    def __init__(self):
        self._matches: list[PendingMatch] = []
        self.generation = 0

    def __len__(self) -> int:
        return len(self._matches)

    def __iter__(self) -> Iterator[PendingMatch]:
        return iter(list(self._matches))

    def __bool__(self) -> bool:
        return bool(self._matches)

    @property
    def matches(self) -> list[PendingMatch]:
        return list(self._matches)

    def has_line_item(self, line_item_id: str) -> bool:
        return any(m.line_item_id == line_item_id for m in self._matches)

    def has_expectation(self, expectation_id: str) -> bool:
        return any(m.expectation_id == expectation_id for m in self._matches)

    def get(self, line_item_id: str) -> Optional[PendingMatch]:
        for match in self._matches:
            if match.line_item_id == line_item_id:
                return match
        return None

    def stage(
        self,
        line_item: Optional[PaymentLineItem],
        expectation: Optional[Expectation],
        tolerance: Decimal,
    ) -> Optional[PendingMatch]:
        """
        Stage a pair, evaluated at the given tolerance.

        Returns None without changing anything when:
        - either record is missing
        - either side is already staged
        - the line item is no longer unmatched
        - the expectation is matched or invalidated
        """
        if line_item is None or expectation is None:
            return None
        if self.has_line_item(line_item.id) or self.has_expectation(expectation.id):
            return None
        if line_item.status != LineItemStatus.UNMATCHED:
            return None
        if not expectation.status.accepts_matches:
            return None

        result = evaluate(line_item.amount, expectation.expected_amount, tolerance)

        pending = PendingMatch(
            line_item_id=line_item.id,
            expectation_id=expectation.id,
            line_item_amount=line_item.amount,
            expected_amount=expectation.expected_amount,
            variance=result.variance,
            variance_percentage=result.variance_percentage,
            is_within_tolerance=result.is_within_tolerance,
        )
        self._matches.append(pending)
        return pending

    def remove(self, line_item_id: str) -> Optional[PendingMatch]:
        for index, match in enumerate(self._matches):
            if match.line_item_id == line_item_id:
                return self._matches.pop(index)
        return None

    def clear(self) -> None:
        self._matches.clear()
        self.generation += 1
