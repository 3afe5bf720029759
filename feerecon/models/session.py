# feerecon/models/session.py

from enum import Enum
from typing import Optional
from pydantic import BaseModel

from feerecon.models.money import Money, Percent, ZERO


# ============================================
# Filters
# ============================================

class PaymentStatusFilter(str, Enum):
    ALL = "all"
    UNRECONCILED = "unreconciled"
    IN_PROGRESS = "in_progress"
    RECONCILED = "reconciled"


class ExpectationStatusFilter(str, Enum):
    ALL = "all"
    UNMATCHED = "unmatched"
    PARTIAL = "partial"
    MATCHED = "matched"
    INVALIDATED = "invalidated"


class PaymentFilters(BaseModel):
    search_term: str = ""
    status: PaymentStatusFilter = PaymentStatusFilter.ALL
    provider: Optional[str] = None


class ExpectationFilters(BaseModel):
    search_term: str = ""
    status: ExpectationStatusFilter = ExpectationStatusFilter.ALL


# ============================================
# Statistics
# ============================================

class ReconciliationStatistics(BaseModel):
    """Session-wide counters shown in the header."""

    total_payments: int = 0
    reconciled_payments: int = 0
    in_progress_payments: int = 0
    unreconciled_payments: int = 0
    total_payment_amount: Money = ZERO
    total_reconciled_amount: Money = ZERO

    total_expectations: int = 0
    matched_expectations: int = 0
    partial_expectations: int = 0
    unmatched_expectations: int = 0
    invalidated_expectations: int = 0
    total_expected_amount: Money = ZERO

    overall_match_percentage: Percent = ZERO
    average_variance_percentage: Percent = ZERO
    unsynced_matches: int = 0
