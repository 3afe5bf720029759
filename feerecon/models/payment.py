# feerecon/models/payment.py

from datetime import date, datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from feerecon.models.money import Money, ZERO


# ============================================
# Statuses
# ============================================

class PaymentStatus(str, Enum):
    UNRECONCILED = "unreconciled"
    IN_PROGRESS = "in_progress"
    RECONCILED = "reconciled"


class LineItemStatus(str, Enum):
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    APPROVED_UNMATCHED = "approved_unmatched"

    @property
    def is_terminal(self) -> bool:
        return self is not LineItemStatus.UNMATCHED


class FeeCategory(str, Enum):
    INITIAL = "initial"
    ONGOING = "ongoing"


# ============================================
# Line Item
# ============================================

class PaymentLineItem(BaseModel):
    """One client charge within a bank payment."""

    id: str
    zoho_id: Optional[str] = None
    client_name: str = "Unknown Client"
    plan_reference: str = ""
    agency_code: Optional[str] = None
    adviser_name: Optional[str] = None
    fee_category: FeeCategory = FeeCategory.ONGOING
    fee_type: Optional[str] = None
    description: Optional[str] = None
    amount: Money
    status: LineItemStatus = LineItemStatus.UNMATCHED
    matched_expectation_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def join_key(self) -> str:
        """Trimmed plan reference; empty means the item can never be auto-joined."""
        return (self.plan_reference or "").strip()

    @property
    def remote_id(self) -> str:
        return self.zoho_id or self.id


# ============================================
# Payment
# ============================================

class Payment(BaseModel):
    """One bank transfer received from a provider."""

    id: str
    zoho_id: Optional[str] = None
    provider_name: str
    payment_reference: str = ""
    bank_reference: str = ""
    amount: Money
    payment_date: Optional[date] = None
    status: PaymentStatus = PaymentStatus.UNRECONCILED
    reconciled_amount: Money = ZERO
    remaining_amount: Optional[Money] = None
    line_items: list[PaymentLineItem] = Field(default_factory=list)
    notes: str = ""
    reconciled_at: Optional[datetime] = None
    reconciled_by: Optional[str] = None

    def model_post_init(self, __context) -> None:
        if self.remaining_amount is None:
            self.remaining_amount = self.amount - self.reconciled_amount

    @property
    def remote_id(self) -> str:
        return self.zoho_id or self.id

    def get_line_item(self, line_item_id: str) -> Optional[PaymentLineItem]:
        for line_item in self.line_items:
            if line_item.id == line_item_id:
                return line_item
        return None

    @property
    def unmatched_line_items(self) -> list[PaymentLineItem]:
        return [li for li in self.line_items if li.status == LineItemStatus.UNMATCHED]

    @property
    def all_line_items_terminal(self) -> bool:
        return all(li.status.is_terminal for li in self.line_items)
