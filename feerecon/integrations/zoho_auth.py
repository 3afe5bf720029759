# feerecon/integrations/zoho_auth.py

"""
Zoho OAuth access token management.

Access tokens are refreshed from the long-lived refresh token and reused until
five minutes before expiry. Only one refresh is ever in flight; concurrent
callers wait on the same lock and pick up the fresh token.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from feerecon.core.errors import RateLimited, TransportFailure

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 300
REFRESH_BACKOFF_SECONDS = (0.5, 1.5, 3.0)
TOKEN_RATE_LIMIT_RETRY_AFTER = 60


class ZohoAuthError(TransportFailure):
    """The refresh token was rejected for a reason other than throttling."""


def _is_throttled(data: dict) -> bool:
    return (
        data.get("error") == "Access Denied"
        and "too many requests" in (data.get("error_description") or "").lower()
    )


class ZohoTokenManager:
    """Hands out a valid access token, refreshing at most once at a time."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        accounts_url: str = "https://accounts.zoho.eu",
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.accounts_url = accounts_url.rstrip("/")
        self._http = http_client
        self._sleep = sleep
        self._clock = clock

        self._access_token: Optional[str] = None
        self._expires_at: float = 0
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def _is_fresh(self) -> bool:
        return bool(self._access_token) and self._expires_at > self._clock() + EXPIRY_BUFFER_SECONDS

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after a 401 from the API."""
        self._access_token = None
        self._expires_at = 0

    async def get_valid_token(self) -> str:
        if self._is_fresh():
            return self._access_token

        async with self._lock:
            # Another caller may have refreshed while we waited
            if self._is_fresh():
                return self._access_token
            return await self._refresh()

    async def _refresh(self) -> str:
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise ZohoAuthError("Missing Zoho client id, client secret or refresh token")

        last_error = None

        for attempt, delay in enumerate(REFRESH_BACKOFF_SECONDS):
            data = await self._request_token()

            if data.get("error"):
                last_error = data.get("error_description") or data.get("error")

                if _is_throttled(data):
                    if attempt < len(REFRESH_BACKOFF_SECONDS) - 1:
                        logger.warning(f"Zoho token refresh throttled, retrying in {delay}s")
                        await self._sleep(delay)
                        continue
                    raise RateLimited(
                        f"Token refresh rate-limited: {last_error}",
                        retry_after_seconds=TOKEN_RATE_LIMIT_RETRY_AFTER,
                    )

                raise ZohoAuthError(f"Token refresh failed: {data.get('error')}")

            self._access_token = data["access_token"]
            self._expires_at = self._clock() + int(data.get("expires_in", 3600))
            self.refresh_count += 1
            logger.info("Zoho access token refreshed")
            return self._access_token

        raise ZohoAuthError(f"Token refresh failed: {last_error or 'Unknown error'}")

    async def _request_token(self) -> dict:
        form = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
        }
        url = f"{self.accounts_url}/oauth/v2/token"

        try:
            if self._http is not None:
                response = await self._http.post(url, data=form)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, data=form)
            return response.json()
        except httpx.HTTPError as e:
            raise TransportFailure(f"Zoho token endpoint unreachable: {e}") from e
        except ValueError as e:
            raise TransportFailure(f"Zoho token endpoint returned invalid JSON: {e}") from e
