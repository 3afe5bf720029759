# feerecon/core/statistics.py

from decimal import Decimal

from feerecon.models import (
    ExpectationStatus,
    PaymentStatus,
    ReconciliationStatistics,
)
from feerecon.models.money import ZERO
from feerecon.core.session import ReconciliationSession

HUNDRED = Decimal("100")


def calculate_statistics(session: ReconciliationSession) -> ReconciliationStatistics:
    """Session-wide counters for the reconciliation header."""
    payments = session.payments
    expectations = session.expectations

    total_payment_amount = sum((p.amount for p in payments), ZERO)
    total_reconciled_amount = sum((p.reconciled_amount for p in payments), ZERO)

    confirmed = [m for m in session.matches if m.confirmed]
    average_variance = ZERO
    if confirmed:
        average_variance = sum((abs(m.variance_percentage) for m in confirmed), ZERO) / len(confirmed)

    overall = ZERO
    if total_payment_amount > 0:
        overall = total_reconciled_amount / total_payment_amount * HUNDRED

    def count_payments(status: PaymentStatus) -> int:
        return len([p for p in payments if p.status == status])

    def count_expectations(status: ExpectationStatus) -> int:
        return len([e for e in expectations if e.status == status])

    return ReconciliationStatistics(
        total_payments=len(payments),
        reconciled_payments=count_payments(PaymentStatus.RECONCILED),
        in_progress_payments=count_payments(PaymentStatus.IN_PROGRESS),
        unreconciled_payments=count_payments(PaymentStatus.UNRECONCILED),
        total_payment_amount=total_payment_amount,
        total_reconciled_amount=total_reconciled_amount,
        total_expectations=len(expectations),
        matched_expectations=count_expectations(ExpectationStatus.MATCHED),
        partial_expectations=count_expectations(ExpectationStatus.PARTIAL),
        unmatched_expectations=count_expectations(ExpectationStatus.UNMATCHED),
        invalidated_expectations=count_expectations(ExpectationStatus.INVALIDATED),
        total_expected_amount=sum((e.expected_amount for e in expectations), ZERO),
        overall_match_percentage=overall,
        average_variance_percentage=average_variance,
        unsynced_matches=len(session.unsynced_units()),
    )
