# feerecon/routers/payments.py

"""
Payment routes.

Browsing, selection and the payment-level actions: approving a single line
item without a match and closing a payment.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Optional

from feerecon.core import ReconciliationError, ReconciliationSession, ReconciliationWorkflow
from feerecon.core.prescreening import is_large_payment
from feerecon.config import get_settings
from feerecon.dependencies import get_session, get_workflow, http_error
from feerecon.models import Payment, PaymentStatusFilter

router = APIRouter()


# ============================================
# Request/Response Models
# ============================================

class NotesRequest(BaseModel):
    notes: str


def _summary(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "provider_name": payment.provider_name,
        "payment_reference": payment.payment_reference,
        "bank_reference": payment.bank_reference,
        "amount": float(payment.amount),
        "payment_date": payment.payment_date,
        "status": payment.status.value,
        "reconciled_amount": float(payment.reconciled_amount),
        "remaining_amount": float(payment.remaining_amount),
        "line_item_count": len(payment.line_items),
        "unmatched_count": len(payment.unmatched_line_items),
    }


def _require_selected(session: ReconciliationSession, payment_id: str) -> None:
    if session.selected_payment_id != payment_id:
        raise HTTPException(status_code=400, detail=f"Payment {payment_id} is not the selected payment")


# ============================================
# Browse
# ============================================

@router.get("")
async def list_payments(
    session: ReconciliationSession = Depends(get_session),
    search: str = Query("", description="Provider name or payment/bank reference"),
    status: PaymentStatusFilter = Query(PaymentStatusFilter.ALL),
    provider: Optional[str] = Query(None),
):
    """
    List payments in the working set with optional filters.
    """
    session.payment_filters.search_term = search
    session.payment_filters.status = status
    session.payment_filters.provider = provider

    payments = session.filtered_payments()

    return {
        "success": True,
        "count": len(payments),
        "payments": [_summary(p) for p in payments],
    }


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    session: ReconciliationSession = Depends(get_session),
):
    payment = session.get_payment(payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")

    return {"success": True, "payment": payment}


# ============================================
# Selection
# ============================================

@router.post("/{payment_id}/select")
async def select_payment(
    payment_id: str,
    session: ReconciliationSession = Depends(get_session),
):
    """
    Make this the working payment. Any staged pairs on the previous payment
    are discarded.
    """
    try:
        payment = session.select_payment(payment_id)
    except ReconciliationError as e:
        raise http_error(e)

    threshold = get_settings().prescreening_threshold

    return {
        "success": True,
        "payment": payment,
        "prescreening_recommended": is_large_payment(len(payment.line_items), threshold),
    }


@router.post("/{payment_id}/line-items/{line_item_id}/select")
async def select_line_item(
    payment_id: str,
    line_item_id: str,
    session: ReconciliationSession = Depends(get_session),
):
    _require_selected(session, payment_id)
    try:
        session.select_line_item(line_item_id)
    except ReconciliationError as e:
        raise http_error(e)

    return {"success": True, "line_item": session.selected_line_item}


# ============================================
# Payment-level actions
# ============================================

@router.post("/{payment_id}/line-items/{line_item_id}/approve")
async def approve_line_item(
    payment_id: str,
    line_item_id: str,
    request: NotesRequest,
    session: ReconciliationSession = Depends(get_session),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """
    Approve a line item that has no matching expectation. Notes are required
    and the approval cannot be undone.
    """
    _require_selected(session, payment_id)
    try:
        line_item, pushed = await workflow.approve_line_item(line_item_id, request.notes)
    except ReconciliationError as e:
        raise http_error(e)

    return {
        "success": True,
        "line_item": line_item,
        "payment_status": session.selected_payment.status.value,
        "synced_to_crm": pushed,
    }


@router.post("/{payment_id}/close")
async def close_payment(
    payment_id: str,
    request: NotesRequest,
    session: ReconciliationSession = Depends(get_session),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """
    Mark the payment fully reconciled, approving every remaining unmatched
    line item with the given notes.
    """
    _require_selected(session, payment_id)
    try:
        payment, pushed = await workflow.close_payment(request.notes)
    except ReconciliationError as e:
        raise http_error(e)

    return {"success": True, "payment": payment, "synced_to_crm": pushed}
