# feerecon/models/match.py

from datetime import datetime, timezone
from enum import Enum
import uuid

from pydantic import BaseModel, Field

from feerecon.models.money import Money, Percent


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# Classification enums
# ============================================

class MatchType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    MULTI = "multi"


class MatchMethod(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"
    AI_SUGGESTED = "ai-suggested"


class MatchQuality(str, Enum):
    PERFECT = "perfect"
    GOOD = "good"
    ACCEPTABLE = "acceptable"
    WARNING = "warning"


# ============================================
# Variance
# ============================================

class VarianceResult(BaseModel):
    """Outcome of comparing a line item amount with an expected amount."""

    variance: Money
    variance_percentage: Percent
    is_within_tolerance: bool


# ============================================
# Pending Match (staging)
# ============================================

class PendingMatch(BaseModel):
    """An unconfirmed, in-session pairing of one line item with one expectation."""

    id: str = Field(default_factory=_new_id)
    line_item_id: str
    expectation_id: str
    line_item_amount: Money
    expected_amount: Money
    variance: Money
    variance_percentage: Percent
    is_within_tolerance: bool
    staged_at: datetime = Field(default_factory=_utcnow)


# ============================================
# Match (confirmed, append-only)
# ============================================

class MatchDetail(BaseModel):
    expectation_id: str
    line_item_id: str
    amount_allocated: Money


class Match(BaseModel):
    """Permanent record of one confirmation event."""

    id: str = Field(default_factory=_new_id)
    payment_id: str
    expectation_ids: list[str]
    matched_amount: Money
    expected_amount: Money
    variance: Money
    variance_percentage: Percent
    match_type: MatchType
    match_method: MatchMethod
    match_quality: MatchQuality
    notes: str = ""
    matched_by: str
    matched_at: datetime = Field(default_factory=_utcnow)
    confirmed: bool = True
    details: list[MatchDetail] = Field(default_factory=list)

    model_config = {"frozen": True}


# ============================================
# Prescreening
# ============================================

class PassResult(BaseModel):
    """One tolerance pass of the prescreening ladder, kept for audit."""

    tolerance: Percent
    tolerance_label: str
    match_count: int
    matches: list[PendingMatch] = Field(default_factory=list)


class TolerancePreview(BaseModel):
    tolerance: Percent
    tolerance_label: str
    match_count: int


class DataQualityReport(BaseModel):
    """Structurally valid but suspect input, surfaced as counts."""

    non_positive_expectations: int = 0
    blank_reference_line_items: int = 0

    @property
    def has_issues(self) -> bool:
        return bool(self.non_positive_expectations or self.blank_reference_line_items)


class VarianceDistribution(BaseModel):
    exact: int = 0
    within_0_5: int = 0
    within_1: int = 0
    within_2: int = 0
    within_5: int = 0
    over_5: int = 0
    total: int = 0
