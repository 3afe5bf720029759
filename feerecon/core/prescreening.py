# feerecon/core/prescreening.py

"""
Progressive tolerance matching ("prescreening").

For large payments the reference join is staged in passes of increasing
tolerance, so a reviewer can see exactly which pairs came in at which level.
Passes only stage; nothing is committed until confirm().
"""

from decimal import Decimal
from typing import TYPE_CHECKING, Optional
import logging

from feerecon.models import (
    DataQualityReport,
    Match,
    MatchMethod,
    PassResult,
    PaymentLineItem,
    Expectation,
    PendingMatch,
    TolerancePreview,
)
from feerecon.models.money import INFINITE_TOLERANCE, to_tolerance, tolerance_label
from feerecon.core.auto_match import candidate_pool, find_reference_joins
from feerecon.core.errors import PreconditionViolation
from feerecon.core.variance import evaluate, variance_distribution

if TYPE_CHECKING:
    from feerecon.core.session import ReconciliationSession

logger = logging.getLogger(__name__)

TOLERANCE_LADDER: tuple[Decimal, ...] = (
    Decimal("0"),
    Decimal("1"),
    Decimal("5"),
    Decimal("10"),
    Decimal("25"),
    INFINITE_TOLERANCE,
)

LARGE_PAYMENT_THRESHOLD = 50


def is_large_payment(line_item_count: int, threshold: int = LARGE_PAYMENT_THRESHOLD) -> bool:
    return line_item_count >= threshold


def ladder_label(tolerance: Decimal) -> str:
    """Reviewer-facing name of a ladder step."""
    if tolerance == 0:
        return "Exact"
    if tolerance <= 1:
        return "Tight"
    if tolerance <= 5:
        return "Normal"
    if tolerance <= 10:
        return "Flexible"
    if tolerance <= 25:
        return "Loose"
    return "Any"


class Prescreener:
    """Walks the tolerance ladder against the selected payment of a session."""

    def __init__(
        self,
        session: "ReconciliationSession",
        ladder: tuple[Decimal, ...] = TOLERANCE_LADDER,
    ):
        self.session = session
        self.ladder = ladder
        self.step = 0
        self.pass_results: list[PassResult] = []
        self._generation = session.staging.generation

    @property
    def is_stale(self) -> bool:
        """True once the pairs staged by these passes have been cleared from the session."""
        return self._generation != self.session.staging.generation

    def restart(self) -> None:
        self.step = 0
        self.pass_results = []
        self._generation = self.session.staging.generation

    def _restart_if_stale(self) -> None:
        if self.is_stale:
            logger.info(
                f"Staging changed for payment {self.session.selected_payment_id}; "
                f"restarting the tolerance ladder"
            )
            self.restart()

    @property
    def is_complete(self) -> bool:
        return self.step >= len(self.ladder)

    @property
    def next_tolerance(self) -> Optional[Decimal]:
        if self.is_complete:
            return None
        return self.ladder[self.step]

    def _potential_matches(self) -> list[tuple[PaymentLineItem, Expectation, PendingMatch]]:
        """Every reference join in the current pool, evaluated without a tolerance filter."""
        pool = candidate_pool(self.session)
        potential = []
        for line_item, expectation in find_reference_joins(pool.line_items, pool.joinable_expectations):
            result = evaluate(line_item.amount, expectation.expected_amount, INFINITE_TOLERANCE)
            potential.append((
                line_item,
                expectation,
                PendingMatch(
                    line_item_id=line_item.id,
                    expectation_id=expectation.id,
                    line_item_amount=line_item.amount,
                    expected_amount=expectation.expected_amount,
                    variance=result.variance,
                    variance_percentage=result.variance_percentage,
                    is_within_tolerance=True,
                ),
            ))
        return potential

    @staticmethod
    def _passes(candidate: PendingMatch, tolerance: Decimal) -> bool:
        if tolerance.is_infinite():
            return True
        return abs(candidate.variance_percentage) <= tolerance

    def run_pass(self, tolerance) -> PassResult:
        """Stage every reference join whose variance is within the given tolerance."""
        if self.session.selected_payment is None:
            raise PreconditionViolation("No payment selected")

        self._restart_if_stale()
        tolerance = to_tolerance(tolerance)
        potential = self._potential_matches()

        if potential:
            dist = variance_distribution([c for _, _, c in potential])
            logger.info(
                f"Prescreening pool: {dist.total} potential matches "
                f"(exact={dist.exact}, <=0.5%={dist.within_0_5}, <=1%={dist.within_1}, "
                f"<=2%={dist.within_2}, <=5%={dist.within_5}, >5%={dist.over_5})"
            )

        staged: list[PendingMatch] = []
        for line_item, expectation, candidate in potential:
            if not self._passes(candidate, tolerance):
                continue
            pending = self.session.add(line_item.id, expectation.id, tolerance=tolerance)
            if pending is not None:
                staged.append(pending)

        result = PassResult(
            tolerance=tolerance,
            tolerance_label=tolerance_label(tolerance),
            match_count=len(staged),
            matches=staged,
        )
        self.pass_results.append(result)

        logger.info(f"Prescreening pass at {result.tolerance_label} staged {len(staged)} matches")

        return result

    def run_next_pass(self) -> Optional[PassResult]:
        """Run the next ladder step. Returns None once the ladder is exhausted."""
        self._restart_if_stale()
        tolerance = self.next_tolerance
        if tolerance is None:
            return None

        result = self.run_pass(tolerance)
        self.step += 1
        return result

    def preview(self) -> list[TolerancePreview]:
        """Matches each ladder step would stage right now. Does not touch state."""
        potential = [c for _, _, c in self._potential_matches()]
        return [
            TolerancePreview(
                tolerance=tolerance,
                tolerance_label=tolerance_label(tolerance),
                match_count=len([c for c in potential if self._passes(c, tolerance)]),
            )
            for tolerance in self.ladder
        ]

    def data_quality(self) -> DataQualityReport:
        return candidate_pool(self.session).data_quality()

    def confirm(self, actor: Optional[str] = None) -> Match:
        """
        Commit everything staged so far as one auto match, graded against the
        session tolerance. The ladder levels that staged pairs go in the notes.
        """
        self._restart_if_stale()
        used = [r for r in self.pass_results if r.match_count > 0] or self.pass_results
        notes = "Prescreening batch - matched at tolerance levels: " + ", ".join(
            r.tolerance_label for r in used
        )

        match = self.session.confirm(notes=notes, method=MatchMethod.AUTO, actor=actor)
        self.restart()
        return match
