from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from telematics.config import settings
from telematics.services.rate_limit import RateLimiter

logger = logging.getLogger("telematics.gps51")

# Vendor status codes
STATUS_OK = 0
RATE_LIMIT_CODES = frozenset({8902})  # IP call limit
TOKEN_ERROR_CODES = frozenset({9903, 9906})  # token expired / invalid

INITIAL_RETRY_DELAY_S = 1.0
MAX_RETRY_DELAY_S = 30.0
BACKOFF_MULTIPLIER = 2.0


class Gps51Error(Exception):
    """Base class for vendor failures that abort a poll cycle."""


class Gps51TransportError(Gps51Error):
    """Timeouts, HTTP errors and unreadable responses."""


class Gps51RateLimitError(Gps51Error):
    pass


class Gps51AuthError(Gps51Error):
    """No usable token and no way to obtain one."""


class Gps51TokenError(Gps51Error):
    def __init__(self, code: int, message: Optional[str] = None):
        self.code = code
        super().__init__(message or f"Token error {code}: token refresh required")


class Gps51Client:
    """HTTP adapter for the GPS51 open API.

    Requests are posted to a forwarding proxy as
    {"targetUrl": ..., "method": "POST", "data": body}; the proxy replays
    them against api.gps51.com from a whitelisted IP.
    """

    def __init__(
        self,
        proxy_url: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        limiter: Optional[RateLimiter] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.proxy_url = proxy_url or settings.gps51_proxy_url
        self.api_url = (api_url or settings.gps51_api_url).rstrip("/")
        self.max_retries = settings.gps51_max_retries if max_retries is None else max_retries
        self.limiter = limiter or RateLimiter(
            min_interval_s=settings.gps51_min_call_interval_ms / 1000.0,
            max_burst_calls=settings.gps51_max_burst_calls,
            sleep=sleep,
        )
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=timeout_s or settings.gps51_timeout_s,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def target_url(self, action: str, token: Optional[str] = None, serverid: Optional[str] = None) -> str:
        params = {"action": action}
        if token:
            params["token"] = token
        if serverid:
            params["serverid"] = serverid
        return str(httpx.URL(self.api_url, params=params))

    async def _post(self, target_url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            r = await self._client.post(
                self.proxy_url,
                json={"targetUrl": target_url, "method": "POST", "data": body},
            )
            r.raise_for_status()
            data = r.json()
        except httpx.TimeoutException as e:
            raise Gps51TransportError(f"GPS51 request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            raise Gps51TransportError(f"GPS51 API HTTP error: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise Gps51TransportError(f"GPS51 request failed: {e}") from e
        except ValueError as e:
            raise Gps51TransportError("GPS51 returned a non-JSON response") from e

        if not isinstance(data, dict):
            raise Gps51TransportError(f"GPS51 returned invalid response type: {type(data).__name__}")
        return data

    async def call(
        self,
        action: str,
        token: str,
        serverid: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Call one vendor action, retrying only on the IP rate-limit code.

        Token errors are returned to the caller untouched; the poll cycle
        decides to invalidate and abort.
        """
        target = self.target_url(action, token, serverid)
        attempt = 0
        while True:
            await self.limiter.acquire()
            logger.debug("Calling GPS51 %s (attempt %d)", action, attempt + 1)
            result = await self._post(target, body or {})
            status = result.get("status")

            if status in RATE_LIMIT_CODES:
                if attempt >= self.max_retries:
                    raise Gps51RateLimitError(
                        f"GPS51 rate limit error after {self.max_retries} retries: "
                        f"{result.get('cause') or 'Unknown'} (status: {status})"
                    )
                delay = min(INITIAL_RETRY_DELAY_S * BACKOFF_MULTIPLIER ** attempt, MAX_RETRY_DELAY_S)
                logger.warning("GPS51 rate limit %s on %s, backing off %.1fs", status, action, delay)
                self.limiter.back_off(delay)
                attempt += 1
                continue

            self.limiter.reset()
            return result

    async def login(self, username: str, password_md5: str) -> Dict[str, Any]:
        """Log in with an MD5-hashed password; no retry on failure."""
        await self.limiter.acquire()
        body = {
            "type": "USER",
            "from": "web",
            "username": username,
            "password": password_md5,
            "browser": "Chrome/120.0.0.0",
        }
        result = await self._post(self.target_url("login"), body)
        if result.get("status") in RATE_LIMIT_CODES:
            self.limiter.back_off(INITIAL_RETRY_DELAY_S)
            raise Gps51RateLimitError(f"GPS51 rate limit error during login (status: {result.get('status')})")
        return result

    async def close(self) -> None:
        await self._client.aclose()


async def timed_call(client: Gps51Client, action: str, token: str, serverid: str, body: Dict[str, Any]):
    """Return (result, duration_ms) for API-call logging."""
    start = time.monotonic()
    result = await client.call(action, token, serverid, body)
    return result, int((time.monotonic() - start) * 1000)
