# feerecon/core/session.py

"""
Reconciliation session aggregate.

One session owns the working set for one user: payments, expectations, the
append-only match log, the staged pairs for the selected payment and the
backlog of records still to be pushed to the CRM. Every mutation goes through
a method on this class.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional
import logging
import uuid

from feerecon.models import (
    Allocation,
    Expectation,
    ExpectationFilters,
    ExpectationStatus,
    ExpectationStatusFilter,
    LineItemStatus,
    Match,
    MatchDetail,
    MatchMethod,
    MatchQuality,
    MatchRecord,
    MatchType,
    Payment,
    PaymentFilters,
    PaymentLineItem,
    PaymentStatus,
    PaymentStatusFilter,
    PendingMatch,
    PropagationState,
    SyncState,
    SyncUnit,
)
from feerecon.models.money import ZERO, to_tolerance
from feerecon.core.errors import PreconditionViolation
from feerecon.core.staging import PendingMatchSet
from feerecon.core.variance import aggregate, classify_quality

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal("5")
DEFAULT_ACTOR = "Current User"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationSession:
    """Single owner of one user's reconciliation state."""

    def __init__(
        self,
        payments: Optional[list[Payment]] = None,
        expectations: Optional[list[Expectation]] = None,
        matches: Optional[list[Match]] = None,
        tolerance: Any = DEFAULT_TOLERANCE,
        actor: str = DEFAULT_ACTOR,
    ):
        self.payments: list[Payment] = list(payments or [])
        self.expectations: list[Expectation] = list(expectations or [])
        self.matches: list[Match] = list(matches or [])
        self.tolerance: Decimal = to_tolerance(tolerance)
        self.actor = actor

        self.selected_payment_id: Optional[str] = None
        self.selected_line_item_id: Optional[str] = None
        self.payment_filters = PaymentFilters()
        self.expectation_filters = ExpectationFilters()

        self.staging = PendingMatchSet()
        self.sync_backlog: dict[str, SyncUnit] = {}

    # ============================================
    # Loading
    # ============================================

    def load(self, payments: list[Payment], expectations: list[Expectation]) -> None:
        """Replace the working set with a fresh download."""
        if self.has_unsynced:
            raise PreconditionViolation(
                f"{len(self.unsynced_units())} matches have not been synced; "
                "sync them before downloading new data"
            )
        self.payments = list(payments)
        self.expectations = list(expectations)
        self.selected_payment_id = None
        self.selected_line_item_id = None
        self.staging.clear()

    # ============================================
    # Lookups
    # ============================================

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        for payment in self.payments:
            if payment.id == payment_id:
                return payment
        return None

    def get_expectation(self, expectation_id: str) -> Optional[Expectation]:
        for expectation in self.expectations:
            if expectation.id == expectation_id:
                return expectation
        return None

    @property
    def selected_payment(self) -> Optional[Payment]:
        if self.selected_payment_id is None:
            return None
        return self.get_payment(self.selected_payment_id)

    @property
    def selected_line_item(self) -> Optional[PaymentLineItem]:
        payment = self.selected_payment
        if payment is None or self.selected_line_item_id is None:
            return None
        return payment.get_line_item(self.selected_line_item_id)

    @property
    def pending(self) -> list[PendingMatch]:
        return self.staging.matches

    def filtered_payments(self) -> list[Payment]:
        filters = self.payment_filters
        payments = self.payments

        if filters.search_term:
            term = filters.search_term.lower()
            payments = [
                p for p in payments
                if term in p.provider_name.lower()
                or term in p.payment_reference.lower()
                or term in p.bank_reference.lower()
            ]
        if filters.status != PaymentStatusFilter.ALL:
            payments = [p for p in payments if p.status.value == filters.status.value]
        if filters.provider:
            payments = [p for p in payments if p.provider_name == filters.provider]

        return payments

    def relevant_expectations(self) -> list[Expectation]:
        """Expectations for the selected payment's provider, with filters applied."""
        payment = self.selected_payment
        if payment is None:
            return []

        filters = self.expectation_filters
        expectations = [e for e in self.expectations if e.provider_name == payment.provider_name]

        if filters.search_term:
            term = filters.search_term.lower()
            expectations = [
                e for e in expectations
                if term in e.client_name.lower() or term in e.plan_reference.lower()
            ]
        if filters.status != ExpectationStatusFilter.ALL:
            expectations = [e for e in expectations if e.status.value == filters.status.value]

        return expectations

    # ============================================
    # Selection & settings
    # ============================================

    def select_payment(self, payment_id: Optional[str]) -> Optional[Payment]:
        """Switch the working payment. Staged pairs never survive a switch."""
        if payment_id is not None and self.get_payment(payment_id) is None:
            raise PreconditionViolation(f"Payment {payment_id} not found")

        if payment_id != self.selected_payment_id:
            self.staging.clear()
            self.selected_line_item_id = None

        self.selected_payment_id = payment_id
        return self.selected_payment

    def select_line_item(self, line_item_id: Optional[str]) -> None:
        payment = self.selected_payment
        if line_item_id is not None and (payment is None or payment.get_line_item(line_item_id) is None):
            raise PreconditionViolation(f"Line item {line_item_id} not found on selected payment")
        self.selected_line_item_id = line_item_id

    def set_tolerance(self, tolerance: Any) -> Decimal:
        """Change the session tolerance. Already staged pairs keep their evaluation."""
        self.tolerance = to_tolerance(tolerance)
        return self.tolerance

    # ============================================
    # Staging
    # ============================================

    def add(
        self,
        line_item_id: str,
        expectation_id: str,
        tolerance: Any = None,
    ) -> Optional[PendingMatch]:
        """Stage a pair on the selected payment. Returns None when rejected."""
        payment = self.selected_payment
        if payment is None:
            return None

        return self.staging.stage(
            payment.get_line_item(line_item_id),
            self.get_expectation(expectation_id),
            self.tolerance if tolerance is None else to_tolerance(tolerance),
        )

    def remove(self, line_item_id: str) -> Optional[PendingMatch]:
        return self.staging.remove(line_item_id)

    def clear(self) -> None:
        self.staging.clear()

    def auto_match(self) -> list[PendingMatch]:
        from feerecon.core.auto_match import auto_match
        return auto_match(self)

    # ============================================
    # Confirmation
    # ============================================

    def confirm(
        self,
        notes: str = "",
        method: MatchMethod = MatchMethod.MANUAL,
        actor: Optional[str] = None,
    ) -> Match:
        """
        Commit every staged pair on the selected payment as one Match.

        Local state is updated immediately; one sync unit per pair is queued
        on the backlog for the CRM push. Quality is graded against the session
        tolerance.
        """
        payment = self.selected_payment
        if payment is None:
            raise PreconditionViolation("No payment selected")

        pairs = self.staging.matches
        if not pairs:
            raise PreconditionViolation("No pending matches to confirm")

        actor = actor or self.actor
        grading = self.tolerance
        total_line, total_expected, variance, percentage = aggregate(pairs)

        match = Match(
            payment_id=payment.id,
            expectation_ids=[p.expectation_id for p in pairs],
            matched_amount=total_line,
            expected_amount=total_expected,
            variance=variance,
            variance_percentage=percentage,
            match_type=MatchType.MULTI if len(pairs) > 1 else MatchType.FULL,
            match_method=method,
            match_quality=classify_quality(percentage, grading),
            notes=notes,
            matched_by=actor,
            details=[
                MatchDetail(
                    expectation_id=p.expectation_id,
                    line_item_id=p.line_item_id,
                    amount_allocated=p.line_item_amount,
                )
                for p in pairs
            ],
        )

        for pair in pairs:
            expectation = self.get_expectation(pair.expectation_id)
            expectation.status = ExpectationStatus.MATCHED
            expectation.allocated_amount = pair.line_item_amount
            expectation.remaining_amount = ZERO
            expectation.allocations.append(
                Allocation(payment_id=payment.id, amount=pair.line_item_amount, match_id=match.id)
            )

            line_item = payment.get_line_item(pair.line_item_id)
            line_item.status = LineItemStatus.MATCHED
            line_item.matched_expectation_id = expectation.id
            if notes:
                line_item.notes = notes

        payment.reconciled_amount = payment.reconciled_amount + total_line
        payment.remaining_amount = payment.amount - payment.reconciled_amount
        self._refresh_payment_status(payment, actor)

        self.matches.append(match)
        self._enqueue(self._build_records(payment, pairs, method, notes, grading))
        self.staging.clear()

        logger.info(
            f"Confirmed {len(pairs)} pairs on payment {payment.id} "
            f"(matched {total_line}, variance {variance}, status {payment.status.value})"
        )

        return match

    def _build_records(
        self,
        payment: Payment,
        pairs: Iterable[PendingMatch],
        method: MatchMethod,
        notes: str,
        grading: Decimal,
    ) -> list[MatchRecord]:
        records = []
        for pair in pairs:
            line_item = payment.get_line_item(pair.line_item_id)
            expectation = self.get_expectation(pair.expectation_id)
            records.append(MatchRecord(
                sync_id=pair.id,
                payment_id=payment.id,
                payment_zoho_id=payment.remote_id,
                line_item_id=line_item.id,
                line_item_zoho_id=line_item.remote_id,
                expectation_id=expectation.id,
                expectation_zoho_id=expectation.remote_id,
                matched_amount=pair.line_item_amount,
                variance=pair.variance,
                variance_percentage=pair.variance_percentage,
                match_type=MatchType.FULL,
                match_method=method,
                match_quality=classify_quality(pair.variance_percentage, grading),
                notes=notes,
            ))
        return records

    def _refresh_payment_status(self, payment: Payment, actor: Optional[str] = None) -> None:
        if payment.line_items and payment.all_line_items_terminal:
            payment.status = PaymentStatus.RECONCILED
            payment.reconciled_at = _now()
            payment.reconciled_by = actor or self.actor
        elif any(li.status.is_terminal for li in payment.line_items):
            payment.status = PaymentStatus.IN_PROGRESS

    # ============================================
    # Single-item actions
    # ============================================

    def mark_line_item_approved_unmatched(
        self,
        line_item_id: str,
        notes: str,
        reason_code: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> PaymentLineItem:
        """
        Exempt an unmatched line item from matching. Irreversible.

        With a reason code (data-check approvals) an expectation-less record
        is queued so the exemption reaches the CRM as well.
        """
        if not notes or not notes.strip():
            raise PreconditionViolation("Notes are required to approve a line item without a match")

        payment = self.selected_payment
        if payment is None:
            raise PreconditionViolation("No payment selected")

        line_item = payment.get_line_item(line_item_id)
        if line_item is None:
            raise PreconditionViolation(f"Line item {line_item_id} not found on selected payment")
        if line_item.status != LineItemStatus.UNMATCHED:
            raise PreconditionViolation(f"Line item {line_item_id} is already {line_item.status.value}")

        self.staging.remove(line_item_id)
        line_item.status = LineItemStatus.APPROVED_UNMATCHED
        line_item.notes = notes.strip()
        self._refresh_payment_status(payment, actor)

        if reason_code:
            self._enqueue([MatchRecord(
                sync_id=str(uuid.uuid4()),
                payment_id=payment.id,
                payment_zoho_id=payment.remote_id,
                line_item_id=line_item.id,
                line_item_zoho_id=line_item.remote_id,
                matched_amount=line_item.amount,
                variance=ZERO,
                variance_percentage=ZERO,
                match_type=MatchType.FULL,
                match_method=MatchMethod.MANUAL,
                match_quality=MatchQuality.WARNING,
                notes=notes.strip(),
                reason_code=reason_code,
            )])

        return line_item

    def mark_payment_fully_reconciled(self, notes: str, actor: Optional[str] = None) -> Payment:
        """Approve every remaining unmatched line item and close the payment."""
        if not notes or not notes.strip():
            raise PreconditionViolation("Notes are required to mark a payment as reconciled")

        payment = self.selected_payment
        if payment is None:
            raise PreconditionViolation("No payment selected")
        if self.staging:
            raise PreconditionViolation("Confirm or clear pending matches before closing the payment")

        actor = actor or self.actor
        notes = notes.strip()

        for line_item in payment.unmatched_line_items:
            line_item.status = LineItemStatus.APPROVED_UNMATCHED
            line_item.notes = notes

        payment.status = PaymentStatus.RECONCILED
        payment.notes = notes
        payment.reconciled_at = _now()
        payment.reconciled_by = actor

        logger.info(f"Payment {payment.id} marked fully reconciled by {actor}")

        return payment

    def invalidate_expectation(
        self,
        expectation_id: str,
        reason: str,
        actor: Optional[str] = None,
    ) -> Expectation:
        """Retire an expectation permanently. It can never be staged again."""
        if not reason or not reason.strip():
            raise PreconditionViolation("A reason is required to invalidate an expectation")

        expectation = self.get_expectation(expectation_id)
        if expectation is None:
            raise PreconditionViolation(f"Expectation {expectation_id} not found")
        if expectation.status == ExpectationStatus.INVALIDATED:
            raise PreconditionViolation(f"Expectation {expectation_id} is already invalidated")
        if expectation.status == ExpectationStatus.MATCHED:
            raise PreconditionViolation(f"Expectation {expectation_id} is matched and cannot be invalidated")

        for pending in self.staging.matches:
            if pending.expectation_id == expectation_id:
                self.staging.remove(pending.line_item_id)

        expectation.status = ExpectationStatus.INVALIDATED
        expectation.invalidation_reason = reason.strip()
        expectation.invalidated_by = actor or self.actor
        expectation.invalidated_at = _now()

        return expectation

    # ============================================
    # Sync backlog
    # ============================================

    def _enqueue(self, records: Iterable[MatchRecord]) -> None:
        for record in records:
            self.sync_backlog[record.sync_id] = SyncUnit(record=record, updated_at=_now())

    def unsynced_units(self) -> list[SyncUnit]:
        return [u for u in self.sync_backlog.values() if not u.is_synced]

    @property
    def has_unsynced(self) -> bool:
        return bool(self.unsynced_units())

    def propagation_queue(self) -> list[SyncUnit]:
        """Confirmed units whose status push to dependent records is outstanding."""
        return [
            u for u in self.sync_backlog.values()
            if u.is_synced and u.propagation in (
                PropagationState.PENDING_STATUS_UPDATE,
                PropagationState.DEGRADED,
            )
        ]

    def set_unit_state(
        self,
        sync_id: str,
        state: SyncState,
        remote_match_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[SyncUnit]:
        unit = self.sync_backlog.get(sync_id)
        if unit is None:
            return None

        unit.state = state
        unit.updated_at = _now()
        if remote_match_id:
            unit.remote_match_id = remote_match_id
        if error is not None:
            unit.last_error = error
        if state == SyncState.CONFIRMED:
            unit.last_error = None
            unit.propagation = PropagationState.PENDING_STATUS_UPDATE
        return unit

    def mark_synced(self, sync_id: str, remote_match_id: Optional[str] = None) -> Optional[SyncUnit]:
        return self.set_unit_state(sync_id, SyncState.CONFIRMED, remote_match_id=remote_match_id)

    def set_propagation(self, sync_ids: Iterable[str], state: PropagationState) -> None:
        for sync_id in sync_ids:
            unit = self.sync_backlog.get(sync_id)
            if unit is not None:
                unit.propagation = state
                unit.updated_at = _now()
