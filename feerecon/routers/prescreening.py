# feerecon/routers/prescreening.py

"""
Prescreening routes: progressive tolerance matching for large payments.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional

from feerecon.config import get_settings
from feerecon.core import Prescreener, ReconciliationError, ReconciliationWorkflow, is_large_payment
from feerecon.core.prescreening import ladder_label
from feerecon.dependencies import (
    SessionRegistry,
    get_current_user,
    get_prescreener,
    get_registry,
    get_workflow,
    http_error,
)
from feerecon.models.money import tolerance_label

router = APIRouter()


class PassRequest(BaseModel):
    # Omit both to run the next ladder step
    tolerance: Optional[float] = None
    any_variance: bool = False


def _ladder_state(prescreener: Prescreener) -> dict:
    next_tolerance = prescreener.next_tolerance
    return {
        "step": prescreener.step,
        "complete": prescreener.is_complete,
        "next_tolerance": (
            None if next_tolerance is None else tolerance_label(next_tolerance)
        ),
        "next_step_name": (
            None if next_tolerance is None else ladder_label(next_tolerance)
        ),
        "passes": prescreener.pass_results,
        "pending_count": len(prescreener.session.pending),
    }


@router.get("")
async def get_prescreening(prescreener: Prescreener = Depends(get_prescreener)):
    """
    Preview how many pairs each tolerance step would stage, plus the
    data-quality counts for the candidate pool.
    """
    payment = prescreener.session.selected_payment
    if payment is None:
        raise HTTPException(status_code=400, detail="No payment selected")

    threshold = get_settings().prescreening_threshold

    return {
        "success": True,
        "recommended": is_large_payment(len(payment.line_items), threshold),
        "preview": prescreener.preview(),
        "data_quality": prescreener.data_quality(),
        **_ladder_state(prescreener),
    }


@router.post("/pass")
async def run_pass(
    request: PassRequest,
    prescreener: Prescreener = Depends(get_prescreener),
):
    """
    Stage every reference join within a tolerance.
    """
    try:
        if request.any_variance:
            result = prescreener.run_pass(None)
        elif request.tolerance is not None:
            result = prescreener.run_pass(request.tolerance)
        else:
            result = prescreener.run_next_pass()
    except ReconciliationError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "result": result, **_ladder_state(prescreener)}


@router.post("/confirm")
async def confirm_prescreening(
    prescreener: Prescreener = Depends(get_prescreener),
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """Commit everything staged by the passes as one auto match and sync it."""
    try:
        match, report = await workflow.confirm_prescreening(prescreener)
    except ReconciliationError as e:
        raise http_error(e)

    return {"success": True, "match": match, "sync": report}


@router.delete("")
async def reset_prescreening(
    user_id: str = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_registry),
):
    """Drop staged pairs and start the ladder again."""
    sessions.get(user_id).clear()
    sessions.reset_prescreener(user_id)
    return {"success": True}
