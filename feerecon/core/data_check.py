# feerecon/core/data_check.py

"""
Data-check conditions for line items that can never be matched.

- No Plan Found: the plan reference is not on any expectation at all.
- No Fee Record: the plan reference exists, but only on expectations for
  other providers.

Approving a condition exempts its line items with the condition's reason code,
which also queues an expectation-less record for the CRM.
"""

from typing import Optional
import logging

from pydantic import BaseModel, Field

from feerecon.models import LineItemStatus, Money, PaymentLineItem
from feerecon.models.money import ZERO
from feerecon.core.errors import PreconditionViolation
from feerecon.core.session import ReconciliationSession

logger = logging.getLogger(__name__)


class DataCondition(BaseModel):
    id: str
    reason_code: str
    title: str
    description: str


NO_PLAN_FOUND = DataCondition(
    id="no-plan-found",
    reason_code="No Plan Found",
    title="No Plan Found",
    description=(
        "The policy reference on these line items does not match any known plan. "
        "No expectation exists for this reference."
    ),
)

NO_FEE_RECORD = DataCondition(
    id="no-fee-record",
    reason_code="No Fee Record",
    title="No Fee Record",
    description=(
        "The plan exists but has no fee record for this provider, "
        "so no expected fee was created."
    ),
)

DATA_CONDITIONS = [NO_PLAN_FOUND, NO_FEE_RECORD]


class DataCheckResult(BaseModel):
    condition: DataCondition
    line_item_ids: list[str] = Field(default_factory=list)
    total_amount: Money = ZERO

    @property
    def count(self) -> int:
        return len(self.line_item_ids)


def _known_references(expectations) -> set[str]:
    return {e.join_key for e in expectations if e.join_key}


def run_data_check(session: ReconciliationSession) -> list[DataCheckResult]:
    """Evaluate every condition against the selected payment's open line items."""
    payment = session.selected_payment
    if payment is None:
        return [DataCheckResult(condition=c) for c in DATA_CONDITIONS]

    all_refs = _known_references(session.expectations)
    provider_refs = _known_references(
        e for e in session.expectations if e.provider_name == payment.provider_name
    )

    open_items = [
        li for li in payment.line_items
        if li.status == LineItemStatus.UNMATCHED
        and not session.staging.has_line_item(li.id)
        and li.join_key
    ]

    no_plan = [li for li in open_items if li.join_key not in all_refs]
    no_fee = [li for li in open_items if li.join_key in all_refs and li.join_key not in provider_refs]

    return [
        _result(NO_PLAN_FOUND, no_plan),
        _result(NO_FEE_RECORD, no_fee),
    ]


def _result(condition: DataCondition, items: list[PaymentLineItem]) -> DataCheckResult:
    return DataCheckResult(
        condition=condition,
        line_item_ids=[li.id for li in items],
        total_amount=sum((li.amount for li in items), ZERO),
    )


def approve_condition(
    session: ReconciliationSession,
    condition_id: str,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> list[PaymentLineItem]:
    """Approve every line item currently caught by a condition."""
    results = {r.condition.id: r for r in run_data_check(session)}
    result = results.get(condition_id)
    if result is None:
        raise PreconditionViolation(f"Unknown data-check condition: {condition_id}")
    if not result.line_item_ids:
        return []

    notes = notes or f"Data Check: {result.condition.title} - {result.count} items approved"

    approved = [
        session.mark_line_item_approved_unmatched(
            line_item_id,
            notes,
            reason_code=result.condition.reason_code,
            actor=actor,
        )
        for line_item_id in result.line_item_ids
    ]

    logger.info(f"Data check approved {len(approved)} line items as '{result.condition.reason_code}'")

    return approved
