# feerecon/routers/session.py

"""
Reconciliation session routes.

Loading data, tolerance, staging pairs against the selected payment,
confirmation, invalidation and the data-check conditions.
"""

from decimal import Decimal
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Optional

from feerecon.core import (
    ReconciliationError,
    ReconciliationSession,
    ReconciliationWorkflow,
    calculate_statistics,
    run_data_check,
)
from feerecon.core.errors import PreconditionViolation, RateLimited
from feerecon.dependencies import (
    get_current_user,
    get_registry,
    get_session,
    get_workflow,
    get_zoho_client,
    http_error,
    SessionRegistry,
)
from feerecon.integrations import claude
from feerecon.integrations.zoho import ZohoApiError, ZohoClient
from feerecon.models import ExpectationStatusFilter
from feerecon.models.money import tolerance_label

router = APIRouter()


# ============================================
# Request/Response Models
# ============================================

class ToleranceRequest(BaseModel):
    # None means any variance is accepted
    tolerance: Optional[float] = None


class StageRequest(BaseModel):
    line_item_id: str
    expectation_id: str


class ConfirmRequest(BaseModel):
    notes: str = ""


class InvalidateRequest(BaseModel):
    reason: str


class ApproveConditionRequest(BaseModel):
    notes: Optional[str] = None


class RemoteDataCheckRequest(BaseModel):
    policy_references: list[str]


def _tolerance(value: Decimal) -> dict:
    return {
        "tolerance": None if value.is_infinite() else float(value),
        "label": tolerance_label(value),
    }


def _pending_state(session: ReconciliationSession) -> dict:
    pending = session.pending
    return {
        "count": len(pending),
        "pending": pending,
        "total_line_amount": float(sum((p.line_item_amount for p in pending), Decimal("0"))),
        "total_expected_amount": float(sum((p.expected_amount for p in pending), Decimal("0"))),
        "outside_tolerance": len([p for p in pending if not p.is_within_tolerance]),
    }


# ============================================
# Session state
# ============================================

@router.get("")
async def get_session_state(session: ReconciliationSession = Depends(get_session)):
    return {
        "success": True,
        "selected_payment_id": session.selected_payment_id,
        "selected_line_item_id": session.selected_line_item_id,
        **_tolerance(session.tolerance),
        "payment_count": len(session.payments),
        "expectation_count": len(session.expectations),
        "pending_count": len(session.pending),
        "unsynced_count": len(session.unsynced_units()),
    }


@router.put("/tolerance")
async def set_tolerance(
    request: ToleranceRequest,
    session: ReconciliationSession = Depends(get_session),
):
    """
    Change the session tolerance. Pairs already staged keep the evaluation
    they were staged with.
    """
    try:
        value = session.set_tolerance(request.tolerance)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, **_tolerance(value)}


@router.get("/statistics")
async def get_statistics(session: ReconciliationSession = Depends(get_session)):
    return {"success": True, "statistics": calculate_statistics(session)}


# ============================================
# Loading
# ============================================

@router.post("/download")
async def download(
    session: ReconciliationSession = Depends(get_session),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """
    Replace the working set with fresh data from Zoho.

    Refused while confirmed matches are still waiting to be synced.
    """
    if session.has_unsynced:
        raise HTTPException(
            status_code=409,
            detail=f"{len(session.unsynced_units())} matches have not been synced to Zoho yet",
        )

    try:
        payments, expectations = await workflow.download()
    except ReconciliationError as e:
        raise http_error(e)
    except ZohoApiError as e:
        raise HTTPException(status_code=502, detail=f"Zoho download failed: {e}")

    return {
        "success": True,
        "payments": len(payments),
        "line_items": sum(len(p.line_items) for p in payments),
        "expectations": len(expectations),
    }


@router.post("/restore")
async def restore(
    session: ReconciliationSession = Depends(get_session),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """Reload the working set and any unsynced matches from the cache."""
    if session.has_unsynced:
        raise HTTPException(status_code=409, detail="Session has unsynced matches")

    restored = await workflow.restore()
    if not restored:
        raise HTTPException(status_code=404, detail="No cached data available")

    return {
        "success": True,
        "payments": len(session.payments),
        "expectations": len(session.expectations),
        "unsynced_count": len(session.unsynced_units()),
    }


@router.delete("")
async def reset_session(
    user_id: str = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_registry),
):
    """Discard the in-memory session. Refused while matches are unsynced."""
    if sessions.get(user_id).has_unsynced:
        raise HTTPException(status_code=409, detail="Session has unsynced matches")
    sessions.drop(user_id)
    return {"success": True}


# ============================================
# Expectations
# ============================================

@router.get("/expectations")
async def list_expectations(
    session: ReconciliationSession = Depends(get_session),
    search: str = Query("", description="Client name or plan reference"),
    status: ExpectationStatusFilter = Query(ExpectationStatusFilter.ALL),
):
    """
    Expectations for the selected payment's provider.
    """
    session.expectation_filters.search_term = search
    session.expectation_filters.status = status

    expectations = session.relevant_expectations()

    return {"success": True, "count": len(expectations), "expectations": expectations}


@router.post("/expectations/{expectation_id}/invalidate")
async def invalidate_expectation(
    expectation_id: str,
    request: InvalidateRequest,
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """
    Permanently retire an expectation. A reason is required.
    """
    try:
        expectation, pushed = await workflow.invalidate(expectation_id, request.reason)
    except ReconciliationError as e:
        raise http_error(e)

    return {"success": True, "expectation": expectation, "synced_to_crm": pushed}


# ============================================
# Staging
# ============================================

@router.get("/pending")
async def list_pending(session: ReconciliationSession = Depends(get_session)):
    return {"success": True, **_pending_state(session)}


@router.post("/pending")
async def stage_pair(
    request: StageRequest,
    session: ReconciliationSession = Depends(get_session),
):
    if session.selected_payment is None:
        raise HTTPException(status_code=400, detail="No payment selected")

    pending = session.add(request.line_item_id, request.expectation_id)

    return {
        "success": True,
        "staged": pending is not None,
        "pending_match": pending,
        **_pending_state(session),
    }


@router.delete("/pending/{line_item_id}")
async def unstage_pair(
    line_item_id: str,
    session: ReconciliationSession = Depends(get_session),
):
    removed = session.remove(line_item_id)
    return {"success": True, "removed": removed is not None, **_pending_state(session)}


@router.delete("/pending")
async def clear_pending(session: ReconciliationSession = Depends(get_session)):
    session.clear()
    return {"success": True, **_pending_state(session)}


@router.post("/auto-match")
async def auto_match(session: ReconciliationSession = Depends(get_session)):
    """
    Stage every plan-reference join within the session tolerance.
    """
    if session.selected_payment is None:
        raise HTTPException(status_code=400, detail="No payment selected")

    staged = session.auto_match()

    return {"success": True, "staged_count": len(staged), **_pending_state(session)}


@router.get("/pending/{line_item_id}/explanation")
async def explain_pending(
    line_item_id: str,
    session: ReconciliationSession = Depends(get_session),
):
    """
    Draft an explanation for a staged pair's variance, to help write the
    confirmation notes.
    """
    pending = session.staging.get(line_item_id)
    if pending is None:
        raise HTTPException(status_code=404, detail="No pending match for this line item")

    explanation = await claude.explain_variance(
        pending,
        session.selected_payment.get_line_item(pending.line_item_id),
        session.get_expectation(pending.expectation_id),
    )

    return {"success": True, "line_item_id": line_item_id, "explanation": explanation}


# ============================================
# Confirmation
# ============================================

@router.post("/confirm")
async def confirm(
    request: ConfirmRequest,
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """
    Commit the staged pairs as one match and push them to Zoho.

    The local commit always stands; the sync report says how much of it
    reached Zoho.
    """
    try:
        match, report = await workflow.confirm_and_sync(notes=request.notes)
    except ReconciliationError as e:
        raise http_error(e)

    return {"success": True, "match": match, "sync": report}


# ============================================
# Data check
# ============================================

@router.get("/data-check")
async def data_check(session: ReconciliationSession = Depends(get_session)):
    """Line items on the selected payment that can never be matched."""
    results = run_data_check(session)
    return {
        "success": True,
        "conditions": [
            {
                "condition": r.condition,
                "count": r.count,
                "total_amount": float(r.total_amount),
                "line_item_ids": r.line_item_ids,
            }
            for r in results
        ],
    }


@router.post("/data-check/{condition_id}/approve")
async def approve_data_condition(
    condition_id: str,
    request: ApproveConditionRequest,
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    try:
        approved, report = await workflow.approve_data_condition(condition_id, notes=request.notes)
    except ReconciliationError as e:
        raise http_error(e)

    return {"success": True, "approved_count": len(approved), "sync": report}


@router.post("/data-check/remote")
async def remote_data_check(
    request: RemoteDataCheckRequest,
    client: ZohoClient = Depends(get_zoho_client),
):
    """Check plans and fee records in Zoho for a list of policy references."""
    try:
        response = await client.invoke("dataCheck", {"policyReferences": request.policy_references})
    except ReconciliationError as e:
        raise http_error(e)

    if response.get("code") == "ZOHO_RATE_LIMIT":
        raise http_error(RateLimited(response.get("error"), response.get("retryAfterSeconds") or 60))
    if not response.get("success"):
        raise http_error(PreconditionViolation(response.get("error") or "Data check failed"))

    return response
