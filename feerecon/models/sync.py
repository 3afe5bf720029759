# feerecon/models/sync.py

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from feerecon.models.money import Money, Percent
from feerecon.models.match import MatchMethod, MatchQuality, MatchType


# ============================================
# Sync unit state machines
# ============================================

class SyncState(str, Enum):
    """staged -> submitted -> confirmed | rate_limited | failed"""

    STAGED = "staged"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"


class PropagationState(str, Enum):
    """Secondary status push that follows a confirmed primary record."""

    NOT_STARTED = "not_started"
    PENDING_STATUS_UPDATE = "pending_status_update"
    PROPAGATED = "propagated"
    DEGRADED = "degraded"


# ============================================
# Match Record (outbound payload)
# ============================================

class MatchRecord(BaseModel):
    """One pairing as pushed to the CRM Payment_Matches module."""

    sync_id: str
    payment_id: str
    payment_zoho_id: str
    line_item_id: str
    line_item_zoho_id: str
    expectation_id: Optional[str] = None
    expectation_zoho_id: Optional[str] = None
    matched_amount: Money
    variance: Money
    variance_percentage: Percent
    match_type: MatchType = MatchType.FULL
    match_method: MatchMethod = MatchMethod.MANUAL
    match_quality: MatchQuality = MatchQuality.GOOD
    notes: str = ""
    reason_code: Optional[str] = None

    def to_crm_params(self) -> dict:
        """Params shape expected by the createMatch / createMatchBatch actions."""
        return {
            "paymentId": self.payment_zoho_id,
            "lineItemId": self.line_item_zoho_id,
            "expectationId": self.expectation_zoho_id,
            "matchedAmount": float(self.matched_amount),
            "variance": float(self.variance),
            "variancePercentage": float(self.variance_percentage),
            "matchType": self.match_type.value,
            "matchMethod": self.match_method.value,
            "matchQuality": self.match_quality.value,
            "notes": self.notes,
            "reasonCode": self.reason_code,
        }


class SyncUnit(BaseModel):
    """Local bookkeeping for one MatchRecord across sync runs."""

    record: MatchRecord
    state: SyncState = SyncState.STAGED
    propagation: PropagationState = PropagationState.NOT_STARTED
    remote_match_id: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def sync_id(self) -> str:
        return self.record.sync_id

    @property
    def is_synced(self) -> bool:
        return self.state == SyncState.CONFIRMED


# ============================================
# Results
# ============================================

class RecordResult(BaseModel):
    sync_id: str
    status: str
    remote_id: Optional[str] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class PropagationReport(BaseModel):
    """Outcome of the secondary line item / expectation status push."""

    line_items_updated: int = 0
    line_items_failed: int = 0
    expectations_updated: int = 0
    expectations_failed: int = 0
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    failed_line_item_ids: list[str] = Field(default_factory=list)
    failed_expectation_ids: list[str] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.line_items_failed or self.expectations_failed or self.rate_limited)


class SyncReport(BaseModel):
    success_count: int = 0
    failed_count: int = 0
    total_requested: int = 0
    chunks_submitted: int = 0
    results: list[RecordResult] = Field(default_factory=list)
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    propagation: Optional[PropagationReport] = None

    @property
    def not_submitted_count(self) -> int:
        return self.total_requested - self.success_count - self.failed_count


class BatchUpdateResult(BaseModel):
    success_count: int = 0
    failed_count: int = 0
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    failed_ids: list[str] = Field(default_factory=list)
