"""
ERP Client Module
=================
Shared HTTP client for every ERP endpoint (SuiteQL, RESTlet files, record
detail). All rate-limit handling lives here so callers only ever see a
usable response or an exception.

THROTTLE SIGNALS:
----------------
- HTTP status in throttle.statuses (429, 503)
- Vendor error code in the JSON body ("o:errorDetails"[0]."o:errorCode")
- Vendor error code anywhere in the raw body (RESTlet governance errors
  come back as plain text or wrapped in other statuses)

BACKOFF:
-------
wait = Retry-After hint (seconds or HTTP-date) when the server sends one,
       else backoff_schedule[attempt] (last entry repeats)
wait = max(wait, min_wait) + uniform(0, jitter)
Retries continue until the cumulative wait would pass max_total_wait,
then ThrottleCeilingExceeded is raised with the attempt count.

TRANSPORT ERRORS:
----------------
Connection resets and timeouts (httpx.TransportError) are retried by the
@retry decorator, independently of throttle handling.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..config import ThrottleConfig, config, secrets
from ..exceptions import ThrottleCeilingExceeded, ThrottledRetryable
from ..utils.decorators import retry
from ..utils.helpers import parse_retry_after
from ..utils.logger import logger


class ErpClient:
    """Throttle-aware HTTP client for the ERP"""

    def __init__(
        self,
        token: Optional[str] = None,
        throttle: Optional[ThrottleConfig] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.token = token if token is not None else secrets.erp_token
        self.throttle = throttle or config.throttle
        self.timeout = timeout or config.erp.timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._rand = rand

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        """Close the underlying client if this instance created it"""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Prefer": "transient",
        }

    @retry(
        max_attempts=config.retry.max_attempts,
        initial_delay=config.retry.initial_delay,
        backoff_multiplier=config.retry.backoff_multiplier,
        max_delay=config.retry.max_delay,
        exceptions=(httpx.TransportError,)
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {**self.headers, **kwargs.pop("headers", {})}
        return await self._get_client().request(method, url, headers=headers, **kwargs)

    def is_throttled(self, response: httpx.Response) -> bool:
        """True when the response carries any rate-limit signal"""
        if response.status_code in self.throttle.statuses:
            return True
        if response.is_success:
            return False
        text = response.text or ""
        return any(code in text for code in self.throttle.error_codes)

    def compute_wait(self, attempt: int, retry_after: Optional[float]) -> float:
        """Delay before the next attempt (attempt is zero-based)"""
        if retry_after is not None:
            wait = retry_after
        else:
            schedule = self.throttle.backoff_schedule
            wait = schedule[min(attempt, len(schedule) - 1)]
        wait = max(wait, self.throttle.min_wait)
        return wait + self._rand() * self.throttle.jitter

    async def send(self, method: str, url: str, tag: str = "", **kwargs) -> httpx.Response:
        """Send a request, waiting out throttle signals; returns the first non-throttled response"""
        attempts = 0
        waited = 0.0

        while True:
            response = await self._request(method, url, **kwargs)
            attempts += 1
            if not self.is_throttled(response):
                if attempts > 1:
                    logger.debug(f"[{tag}] succeeded after {attempts} attempts ({waited:.2f}s throttled)")
                return response

            signal = ThrottledRetryable(
                response.status_code,
                parse_retry_after(response.headers.get("Retry-After"))
            )
            wait = self.compute_wait(attempts - 1, signal.retry_after)
            if waited + wait > self.throttle.max_total_wait:
                logger.error(
                    f"[{tag}] throttle ceiling reached: {attempts} attempts, "
                    f"{waited:.2f}s waited, last status {signal.status}"
                )
                raise ThrottleCeilingExceeded(tag, attempts, waited, signal.status)

            logger.warning(f"[{tag}] {signal} - attempt {attempts}, waiting {wait:.2f}s")
            await self._sleep(wait)
            waited += wait


# Global client instance
erp_client = ErpClient()
