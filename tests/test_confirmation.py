# tests/test_confirmation.py

"""
Tests for confirmation and the single-item actions.
"""

import pytest
from decimal import Decimal

from feerecon.core.errors import PreconditionViolation
from feerecon.models import (
    ExpectationStatus,
    LineItemStatus,
    MatchMethod,
    MatchQuality,
    MatchType,
    PaymentStatus,
    SyncState,
)

from factories import make_expectation, make_line_item, make_payment, make_session


def three_item_session(tolerance=5):
    payment = make_payment("pay_1", 600, [
        make_line_item("li_1", 100, "P1"),
        make_line_item("li_2", 200, "P2"),
        make_line_item("li_3", 300, "P3"),
    ])
    expectations = [
        make_expectation("exp_1", 100, "P1"),
        make_expectation("exp_2", 196, "P2"),
        make_expectation("exp_3", 300, "P3"),
    ]
    session = make_session([payment], expectations, tolerance=tolerance)
    session.select_payment("pay_1")
    return session


# ============================================
# Confirm
# ============================================

class TestConfirm:
    """Test committing staged pairs."""

    def test_confirm_n_pairs(self):
        session = three_item_session()
        session.add("li_1", "exp_1")
        session.add("li_2", "exp_2")

        match = session.confirm(notes="January statement")

        assert len(session.matches) == 1
        assert match.match_type == MatchType.MULTI
        assert match.expectation_ids == ["exp_1", "exp_2"]
        assert match.matched_amount == Decimal("300.00")
        assert match.expected_amount == Decimal("296.00")
        assert match.variance == Decimal("4.00")
        assert len(match.details) == 2

        for line_item_id, expectation_id in [("li_1", "exp_1"), ("li_2", "exp_2")]:
            line_item = session.selected_payment.get_line_item(line_item_id)
            expectation = session.get_expectation(expectation_id)

            assert line_item.status == LineItemStatus.MATCHED
            assert line_item.matched_expectation_id == expectation_id
            assert line_item.notes == "January statement"
            assert expectation.status == ExpectationStatus.MATCHED
            assert expectation.remaining_amount == 0
            assert expectation.allocated_amount == line_item.amount
            assert len(expectation.allocations) == 1
            assert expectation.allocations[0].match_id == match.id

    def test_payment_balance_invariant(self):
        session = three_item_session()
        session.add("li_1", "exp_1")
        session.add("li_2", "exp_2")

        session.confirm()
        payment = session.selected_payment

        assert payment.reconciled_amount == Decimal("300.00")
        assert payment.remaining_amount == Decimal("300.00")
        assert payment.reconciled_amount + payment.remaining_amount == payment.amount
        assert payment.status == PaymentStatus.IN_PROGRESS

    def test_last_items_reconcile_payment(self):
        session = three_item_session()
        for n in (1, 2, 3):
            session.add(f"li_{n}", f"exp_{n}")

        session.confirm()
        payment = session.selected_payment

        assert payment.status == PaymentStatus.RECONCILED
        assert payment.reconciled_at is not None
        assert payment.reconciled_by == "tester"
        assert payment.remaining_amount == 0

    def test_single_pair_is_full_match(self):
        session = three_item_session()
        session.add("li_1", "exp_1")

        match = session.confirm()

        assert match.match_type == MatchType.FULL
        assert match.match_quality == MatchQuality.PERFECT
        assert match.match_method == MatchMethod.MANUAL

    def test_confirm_clears_staging(self):
        session = three_item_session()
        session.add("li_1", "exp_1")

        session.confirm()

        assert session.pending == []

    def test_confirm_queues_one_record_per_pair(self):
        session = three_item_session()
        first = session.add("li_1", "exp_1")
        second = session.add("li_2", "exp_2")

        session.confirm(notes="ok")

        units = session.unsynced_units()
        assert [u.sync_id for u in units] == [first.id, second.id]
        assert all(u.state == SyncState.STAGED for u in units)

        record = units[1].record
        assert record.payment_zoho_id == "z_pay_1"
        assert record.line_item_zoho_id == "z_li_2"
        assert record.expectation_zoho_id == "z_exp_2"
        assert record.match_type == MatchType.FULL
        assert record.match_quality == MatchQuality.ACCEPTABLE
        assert record.notes == "ok"

    def test_out_of_tolerance_pair_confirms_with_warning(self):
        session = three_item_session(tolerance=1)
        session.add("li_2", "exp_2")

        match = session.confirm(notes="Fee rate changed")

        assert match.match_quality == MatchQuality.WARNING

    def test_nothing_staged(self):
        session = three_item_session()

        with pytest.raises(PreconditionViolation):
            session.confirm()

        assert session.matches == []
        assert session.selected_payment.status == PaymentStatus.UNRECONCILED

    def test_no_payment_selected(self):
        session = three_item_session()
        session.add("li_1", "exp_1")
        session.selected_payment_id = None

        with pytest.raises(PreconditionViolation):
            session.confirm()

        assert session.get_expectation("exp_1").status == ExpectationStatus.UNMATCHED
        assert session.matches == []


# ============================================
# Scenario: 502.50 vs 500.00 at 1%
# ============================================

class TestScenario:

    def test_auto_stage_and_confirm(self, scenario_session):
        session = scenario_session

        staged = session.auto_match()

        assert len(staged) == 1
        pending = staged[0]
        assert pending.variance == Decimal("2.50")
        assert pending.variance_percentage == Decimal("0.5")
        assert pending.is_within_tolerance is True

        session.confirm()

        assert session.selected_payment.status == PaymentStatus.IN_PROGRESS

    def test_reconciled_once_nothing_remains(self, scenario_session):
        session = scenario_session
        session.auto_match()
        session.confirm()

        session.mark_line_item_approved_unmatched("li_2", "Fee not expected this month")

        assert session.selected_payment.status == PaymentStatus.RECONCILED


# ============================================
# Single-item actions
# ============================================

class TestApproveUnmatched:
    """Test approving a line item without a match."""

    def test_requires_notes(self):
        session = three_item_session()

        with pytest.raises(PreconditionViolation):
            session.mark_line_item_approved_unmatched("li_1", "   ")

        assert session.selected_payment.get_line_item("li_1").status == LineItemStatus.UNMATCHED

    def test_approves_and_unstages(self):
        session = three_item_session()
        session.add("li_1", "exp_1")

        line_item = session.mark_line_item_approved_unmatched("li_1", "Duplicate payment")

        assert line_item.status == LineItemStatus.APPROVED_UNMATCHED
        assert line_item.notes == "Duplicate payment"
        assert session.pending == []
        assert session.selected_payment.status == PaymentStatus.IN_PROGRESS

    def test_is_irreversible(self):
        session = three_item_session()
        session.mark_line_item_approved_unmatched("li_1", "Duplicate payment")

        with pytest.raises(PreconditionViolation):
            session.mark_line_item_approved_unmatched("li_1", "Again")

    def test_plain_approval_queues_nothing(self):
        session = three_item_session()
        session.mark_line_item_approved_unmatched("li_1", "Duplicate payment")

        assert session.unsynced_units() == []

    def test_reason_code_queues_record(self):
        session = three_item_session()

        session.mark_line_item_approved_unmatched("li_1", "No plan", reason_code="No Plan Found")

        units = session.unsynced_units()
        assert len(units) == 1
        record = units[0].record
        assert record.expectation_zoho_id is None
        assert record.reason_code == "No Plan Found"
        assert record.matched_amount == Decimal("100.00")


class TestClosePayment:

    def test_mark_fully_reconciled(self):
        session = three_item_session()
        session.add("li_1", "exp_1")
        session.confirm()

        payment = session.mark_payment_fully_reconciled("Remaining fees written off", actor="reviewer")

        assert payment.status == PaymentStatus.RECONCILED
        assert payment.reconciled_by == "reviewer"
        assert payment.notes == "Remaining fees written off"
        statuses = [li.status for li in payment.line_items]
        assert statuses == [
            LineItemStatus.MATCHED,
            LineItemStatus.APPROVED_UNMATCHED,
            LineItemStatus.APPROVED_UNMATCHED,
        ]

    def test_requires_notes(self):
        session = three_item_session()
        with pytest.raises(PreconditionViolation):
            session.mark_payment_fully_reconciled("")

    def test_refused_with_staged_pairs(self):
        session = three_item_session()
        session.add("li_1", "exp_1")

        with pytest.raises(PreconditionViolation):
            session.mark_payment_fully_reconciled("Close it")


class TestInvalidate:
    """Test invalidating an expectation."""

    def test_invalidate_then_add_rejected(self):
        session = three_item_session()

        expectation = session.invalidate_expectation("exp_1", "plan closed")

        assert expectation.status == ExpectationStatus.INVALIDATED
        assert expectation.invalidation_reason == "plan closed"
        assert expectation.invalidated_by == "tester"
        assert expectation.invalidated_at is not None
        assert session.add("li_1", "exp_1") is None

    def test_invalidate_unstages_pair(self):
        session = three_item_session()
        session.add("li_1", "exp_1")

        session.invalidate_expectation("exp_1", "plan closed")

        assert session.pending == []

    def test_requires_reason(self):
        session = three_item_session()
        with pytest.raises(PreconditionViolation):
            session.invalidate_expectation("exp_1", "")

    def test_terminal(self):
        session = three_item_session()
        session.invalidate_expectation("exp_1", "plan closed")

        with pytest.raises(PreconditionViolation):
            session.invalidate_expectation("exp_1", "again")

    def test_matched_cannot_be_invalidated(self):
        session = three_item_session()
        session.add("li_1", "exp_1")
        session.confirm()

        with pytest.raises(PreconditionViolation):
            session.invalidate_expectation("exp_1", "plan closed")


class TestBacklog:

    def test_load_refused_with_unsynced(self):
        session = three_item_session()
        session.add("li_1", "exp_1")
        session.confirm()

        with pytest.raises(PreconditionViolation):
            session.load([], [])

    def test_mark_synced_moves_to_propagation(self):
        session = three_item_session()
        pending = session.add("li_1", "exp_1")
        session.confirm()

        session.mark_synced(pending.id, "zm_1")

        assert session.unsynced_units() == []
        assert [u.sync_id for u in session.propagation_queue()] == [pending.id]
        assert session.sync_backlog[pending.id].remote_match_id == "zm_1"
