# tests/test_auto_match.py

"""
Tests for single-pass auto-matching by plan reference.
"""

from feerecon.core.auto_match import candidate_pool, find_reference_joins
from feerecon.models import ExpectationStatus

from factories import make_expectation, make_line_item, make_payment, make_session


def session_with(line_items, expectations, tolerance=5):
    payment = make_payment("pay_1", sum(li.amount for li in line_items), line_items)
    session = make_session([payment], expectations, tolerance=tolerance)
    session.select_payment("pay_1")
    return session


class TestReferenceJoins:
    """Test the first-fit plan reference join."""

    def test_first_fit_in_collection_order(self):
        line_items = [make_line_item("li_1", 100, "P1"), make_line_item("li_2", 100, "P1")]
        expectations = [
            make_expectation("exp_a", 150, "P1"),
            make_expectation("exp_b", 100, "P1"),
        ]

        joins = find_reference_joins(line_items, expectations)

        # First-fit, not closest amount
        assert [(li.id, e.id) for li, e in joins] == [("li_1", "exp_a"), ("li_2", "exp_b")]

    def test_references_are_trimmed(self):
        joins = find_reference_joins(
            [make_line_item("li_1", 100, "  P1 ")],
            [make_expectation("exp_1", 100, "P1")],
        )
        assert len(joins) == 1

    def test_blank_references_never_join(self):
        joins = find_reference_joins(
            [make_line_item("li_1", 100, "  ")],
            [make_expectation("exp_1", 100, "")],
        )
        assert joins == []

    def test_each_expectation_claimed_once(self):
        joins = find_reference_joins(
            [make_line_item("li_1", 100, "P1"), make_line_item("li_2", 100, "P1")],
            [make_expectation("exp_1", 100, "P1")],
        )
        assert [(li.id, e.id) for li, e in joins] == [("li_1", "exp_1")]


class TestAutoMatch:
    """Test staging joins within the session tolerance."""

    def test_stages_within_tolerance_only(self):
        session = session_with(
            [make_line_item("li_1", 103, "P1"), make_line_item("li_2", 120, "P2")],
            [make_expectation("exp_1", 100, "P1"), make_expectation("exp_2", 100, "P2")],
        )

        staged = session.auto_match()

        assert [(p.line_item_id, p.expectation_id) for p in staged] == [("li_1", "exp_1")]
        assert session.staging.has_line_item("li_2") is False

    def test_other_providers_ignored(self):
        session = session_with(
            [make_line_item("li_1", 100, "P1")],
            [make_expectation("exp_1", 100, "P1", provider_name="Someone Else")],
        )

        assert session.auto_match() == []

    def test_skips_already_staged(self):
        session = session_with(
            [make_line_item("li_1", 100, "P1"), make_line_item("li_2", 100, "P1")],
            [make_expectation("exp_1", 100, "P1"), make_expectation("exp_2", 100, "P1")],
        )
        session.add("li_2", "exp_1")

        staged = session.auto_match()

        assert [(p.line_item_id, p.expectation_id) for p in staged] == [("li_1", "exp_2")]

    def test_partial_expectations_not_candidates(self):
        expectation = make_expectation("exp_1", 100, "P1")
        expectation.status = ExpectationStatus.PARTIAL
        session = session_with([make_line_item("li_1", 100, "P1")], [expectation])

        assert session.auto_match() == []

    def test_nothing_selected(self):
        session = session_with([make_line_item("li_1", 100, "P1")], [make_expectation("exp_1", 100, "P1")])
        session.select_payment(None)

        assert session.auto_match() == []


class TestZeroAmountExpectation:
    """An expectation of 0.00 is excluded from automatic matching entirely."""

    def test_excluded_from_auto_match_at_any_tolerance(self):
        session = session_with(
            [make_line_item("li_1", 0, "P1")],
            [make_expectation("exp_1", 0, "P1")],
            tolerance=None,
        )

        assert session.auto_match() == []

    def test_counted_as_data_quality(self):
        session = session_with(
            [make_line_item("li_1", 10, "P1"), make_line_item("li_2", 10, "")],
            [make_expectation("exp_1", 0, "P1"), make_expectation("exp_2", -5, "P1")],
        )

        report = candidate_pool(session).data_quality()

        assert report.non_positive_expectations == 2
        assert report.blank_reference_line_items == 1
        assert report.has_issues

    def test_still_manually_stageable(self):
        session = session_with(
            [make_line_item("li_1", 10, "P1")],
            [make_expectation("exp_1", 0, "P1")],
            tolerance=25,
        )

        pending = session.add("li_1", "exp_1")

        assert pending is not None
        assert pending.variance_percentage == 0
        assert pending.is_within_tolerance is False

    def test_manual_stage_within_unbounded_tolerance(self):
        session = session_with(
            [make_line_item("li_1", 10, "P1")],
            [make_expectation("exp_1", 0, "P1")],
            tolerance=None,
        )

        assert session.add("li_1", "exp_1").is_within_tolerance is True
