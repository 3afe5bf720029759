# feerecon/dependencies.py

"""
FastAPI dependencies.

Validates Supabase JWTs, hands each authenticated user their own
reconciliation session, and wires the Zoho client and cache into a workflow.
"""

from functools import lru_cache
from typing import Optional
import threading

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from feerecon.config import get_settings
from feerecon.core import (
    Prescreener,
    PreconditionViolation,
    RateLimited,
    ReconciliationError,
    ReconciliationSession,
    ReconciliationWorkflow,
    TransportFailure,
)
from feerecon.database import CacheStore, get_supabase_admin
from feerecon.integrations.zoho import ZohoClient

security = HTTPBearer()


def _unauthorized(detail: str = "Invalid or expired token") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Resolve the bearer token to a Supabase user id. Each id owns one
    reconciliation session in the registry below.

    Sync on purpose: supabase-py blocks, so FastAPI runs this in its threadpool.
    """
    try:
        user_response = get_supabase_admin().auth.get_user(credentials.credentials)
    except Exception as e:
        raise _unauthorized() from e

    user = getattr(user_response, "user", None)
    if user is None:
        raise _unauthorized()

    return user.id


# ============================================
# Sessions
# ============================================

class SessionRegistry:
    """One in-memory reconciliation session (and prescreener) per user."""

    def __init__(self):
        self._sessions: dict[str, ReconciliationSession] = {}
        self._prescreeners: dict[str, tuple[Optional[str], Prescreener]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> ReconciliationSession:
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                settings = get_settings()
                session = ReconciliationSession(tolerance=settings.default_tolerance, actor=user_id)
                self._sessions[user_id] = session
            return session

    def prescreener(self, user_id: str) -> Prescreener:
        """
        The user's prescreener. The ladder starts over whenever the selected
        payment changes or its staged pairs are cleared, including a switch
        away and back to the same payment.
        """
        session = self.get(user_id)
        with self._lock:
            payment_id, prescreener = self._prescreeners.get(user_id, (None, None))
            if prescreener is None or payment_id != session.selected_payment_id:
                prescreener = Prescreener(session)
                self._prescreeners[user_id] = (session.selected_payment_id, prescreener)
            elif prescreener.is_stale:
                prescreener.restart()
            return prescreener

    def reset_prescreener(self, user_id: str) -> None:
        with self._lock:
            self._prescreeners.pop(user_id, None)

    def drop(self, user_id: str) -> None:
        with self._lock:
            self._sessions.pop(user_id, None)
            self._prescreeners.pop(user_id, None)


registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    return registry


def get_session(
    user_id: str = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_registry),
) -> ReconciliationSession:
    return sessions.get(user_id)


def get_prescreener(
    user_id: str = Depends(get_current_user),
    sessions: SessionRegistry = Depends(get_registry),
) -> Prescreener:
    return sessions.prescreener(user_id)


# ============================================
# Integrations
# ============================================

@lru_cache()
def get_zoho_client() -> ZohoClient:
    return ZohoClient.from_settings(get_settings())


def get_cache(user_id: str = Depends(get_current_user)) -> Optional[CacheStore]:
    return CacheStore(user_id)


def get_workflow(
    session: ReconciliationSession = Depends(get_session),
    client: ZohoClient = Depends(get_zoho_client),
    cache: Optional[CacheStore] = Depends(get_cache),
) -> ReconciliationWorkflow:
    return ReconciliationWorkflow.from_settings(session, client, cache, get_settings())


# ============================================
# Error mapping
# ============================================

def http_error(error: ReconciliationError) -> HTTPException:
    """Translate an engine error into the HTTP response the client sees."""
    if isinstance(error, RateLimited):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(error),
            headers={"Retry-After": str(error.retry_after_seconds)},
        )
    if isinstance(error, TransportFailure):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, PreconditionViolation):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
