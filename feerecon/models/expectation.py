# feerecon/models/expectation.py

from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from feerecon.models.money import Money, ZERO
from feerecon.models.payment import FeeCategory


class ExpectationStatus(str, Enum):
    UNMATCHED = "unmatched"
    PARTIAL = "partial"
    MATCHED = "matched"
    INVALIDATED = "invalidated"

    @property
    def accepts_matches(self) -> bool:
        return self in (ExpectationStatus.UNMATCHED, ExpectationStatus.PARTIAL)


class Allocation(BaseModel):
    """A slice of an expectation covered by a confirmed match."""

    payment_id: str
    amount: Money
    match_id: str


class Expectation(BaseModel):
    """A predicted fee awaiting a matching payment line item."""

    id: str
    zoho_id: Optional[str] = None
    client_name: str = "Unknown Client"
    plan_reference: str = ""
    expected_amount: Money
    calculation_date: Optional[date] = None
    fee_category: FeeCategory = FeeCategory.ONGOING
    fee_type: Optional[str] = None
    description: Optional[str] = None
    provider_name: str = "Unknown Provider"
    adviser_name: str = ""
    grouping_company: str = ""
    status: ExpectationStatus = ExpectationStatus.UNMATCHED
    allocated_amount: Money = ZERO
    remaining_amount: Optional[Money] = None
    allocations: list[Allocation] = Field(default_factory=list)

    # Invalidation audit
    invalidation_reason: Optional[str] = None
    invalidated_by: Optional[str] = None
    invalidated_at: Optional[datetime] = None

    def model_post_init(self, __context) -> None:
        if self.remaining_amount is None:
            self.remaining_amount = self.expected_amount - self.allocated_amount

    @property
    def join_key(self) -> str:
        return (self.plan_reference or "").strip()

    @property
    def remote_id(self) -> str:
        return self.zoho_id or self.id

    @property
    def has_usable_amount(self) -> bool:
        """Non-positive expected amounts are a data-quality signal."""
        return self.expected_amount > 0
