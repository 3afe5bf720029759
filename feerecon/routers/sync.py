# feerecon/routers/sync.py

"""
Sync routes for pushing confirmed matches to Zoho.
"""

from fastapi import APIRouter, Depends, Response

from feerecon.core import ReconciliationError, ReconciliationSession, ReconciliationWorkflow
from feerecon.dependencies import get_session, get_workflow, http_error

router = APIRouter()


@router.get("/status")
async def sync_status(session: ReconciliationSession = Depends(get_session)):
    """
    Units still waiting for Zoho, and confirmed units whose status push is
    outstanding.
    """
    unsynced = session.unsynced_units()
    propagation = session.propagation_queue()

    return {
        "success": True,
        "unsynced_count": len(unsynced),
        "propagation_pending_count": len(propagation),
        "download_allowed": not unsynced,
        "unsynced": unsynced,
        "propagation_pending": propagation,
    }


@router.post("/pending")
async def sync_pending(
    response: Response,
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """
    Push every unsynced match. A rate-limited run still returns its report;
    the Retry-After header says when to try again.
    """
    try:
        report = await workflow.sync_pending()
    except ReconciliationError as e:
        raise http_error(e)

    if report.rate_limited and report.retry_after_seconds:
        response.headers["Retry-After"] = str(report.retry_after_seconds)

    return {"success": report.failed_count == 0 and not report.rate_limited, "sync": report}


@router.post("/propagation")
async def retry_propagation(
    response: Response,
    workflow: ReconciliationWorkflow = Depends(get_workflow),
):
    """Retry the line item and expectation status push for synced matches."""
    try:
        report = await workflow.retry_propagation()
    except ReconciliationError as e:
        raise http_error(e)

    if report.rate_limited and report.retry_after_seconds:
        response.headers["Retry-After"] = str(report.retry_after_seconds)

    return {"success": not report.degraded, "propagation": report}
