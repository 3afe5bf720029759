# feerecon/routers/health.py

import logging

from fastapi import APIRouter, Depends, Response, status

from feerecon.config import Settings, get_settings
from feerecon.core.errors import ReconciliationError
from feerecon.dependencies import get_zoho_client
from feerecon.integrations.zoho import ZohoClient

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness check."""
    return {
        "status": "healthy",
        "service": "feerecon-api",
    }


@router.get("/ready")
async def readiness_check(
    response: Response,
    settings: Settings = Depends(get_settings),
    client: ZohoClient = Depends(get_zoho_client),
):
    """
    Ready once the cache credentials are configured and a Zoho access token
    can be obtained.
    """
    checks = {
        "database": "ok" if settings.supabase_url and settings.supabase_service_role_key else "missing config",
    }

    try:
        await client.token_manager.get_valid_token()
        checks["zoho"] = "ok"
    except ReconciliationError as e:
        logger.warning(f"Readiness: Zoho token unavailable: {e}")
        checks["zoho"] = "unavailable"

    ready = all(value == "ok" for value in checks.values())
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return {"status": "ready" if ready else "not ready", "checks": checks}
