"""
Backoff HTTP client for the catalog provider.

Wraps httpx.AsyncClient. Rate limits (429), server errors (5xx) and transport
errors are retried with exponential delay (1s, 2s, 4s, 8s, 8s, ...) with no
retry counter: the caller's time budget is the only bound. When a deadline is
set and the next sleep would cross it, RetryBudgetExhausted is raised instead.

Any other non-2xx response fails immediately with a classified
ProviderHTTPError carrying the raw body.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from catalogsync.errors import (
    ProviderAuthError,
    ProviderForbiddenError,
    ProviderHTTPError,
    ProviderNotFoundError,
    RetryBudgetExhausted,
)

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_CAP = 8.0


def backoff_delay(attempt: int, base: float = DEFAULT_BACKOFF_BASE, cap: float = DEFAULT_BACKOFF_CAP) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(base * (2 ** (attempt - 1)), cap)


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def raise_for_provider_status(resp: httpx.Response, context: str = "") -> None:
    """Raise the classified error for a non-retryable, non-2xx response."""
    if 200 <= resp.status_code < 300:
        return
    body = resp.text or ""
    if resp.status_code == 401:
        raise ProviderAuthError(resp.status_code, body, context)
    if resp.status_code == 403:
        raise ProviderForbiddenError(resp.status_code, body, context)
    if resp.status_code == 404:
        raise ProviderNotFoundError(resp.status_code, body, context)
    raise ProviderHTTPError(resp.status_code, body, context)


class BackoffHTTPClient:
    """
    Retrying request executor bound to one provider base URL and token.

    Usage:
        http = BackoffHTTPClient(base_url, token, api_version="2025-07-17")
        resp = await http.call("GET", "/v2/merchants/me")
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        *,
        api_version: str,
        timeout: float = 30.0,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_cap: float = DEFAULT_BACKOFF_CAP,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Provider API root, e.g. https://connect.squareup.com.
            access_token: Bearer token (already decrypted).
            api_version: Value for the Square-Version header.
            deadline: Monotonic timestamp after which no backoff sleep may end.
            clock / sleep: Injected for tests.
            transport: httpx transport override (httpx.MockTransport in tests).
        """
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Square-Version": api_version,
                "Accept": "application/json",
            },
        )
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.deadline = deadline
        self._clock = clock
        self._sleep = sleep

    async def call(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        context: str = "",
    ) -> httpx.Response:
        """Issue a request, retrying transient failures until success or deadline."""
        attempt = 0
        while True:
            attempt += 1
            status: Optional[int]
            try:
                resp = await self._client.request(method, path, params=params, json=json)
                status = resp.status_code
            except httpx.TransportError as exc:
                logger.warning("%s %s transport error: %s", method, path, exc)
                status = None
            else:
                if not is_retryable_status(status):
                    raise_for_provider_status(resp, context or f"{method} {path}")
                    return resp

            delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
            if self.deadline is not None and self._clock() + delay > self.deadline:
                raise RetryBudgetExhausted(status, attempt)
            logger.info(
                "%s %s returned %s; retrying in %.1fs (attempt %d)",
                method, path, status, delay, attempt,
            )
            await self._sleep(delay)

    async def aclose(self) -> None:
        await self._client.aclose()
