"""
Resilient HTTP client for talking to unreliable external services.
Implements per-attempt hard timeouts, bounded retries with linear backoff,
and retryable/terminal failure classification.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from circulation.errors import TerminalFetchFailure, TransientNetworkError
from utilities.logger import SyncLogger

logger = structlog.get_logger(__name__)


class FetchOptions(BaseModel):
    """Per-request resilience settings."""
    timeout_ms: int = Field(default=5000, gt=0, description="Hard timeout for one attempt")
    retries: int = Field(default=2, ge=0, description="Additional attempts after the first")
    retry_backoff_ms: int = Field(default=200, ge=0, description="Backoff unit; attempt n sleeps n units")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1


class FetchFailure(BaseModel):
    """Terminal outcome of a request that did not produce a usable response."""
    url: str = Field(...)
    method: str = Field(default="GET")
    status_code: Optional[int] = Field(default=None, description="Last HTTP status, if any")
    error: str = Field(..., description="Last error message")
    attempts: int = Field(..., ge=1)
    retryable: bool = Field(..., description="Whether the last failure was of a retryable kind")
    timed_out: bool = Field(default=False)

    def describe(self) -> str:
        status = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{self.method} {self.url} failed after {self.attempts} attempt(s){status}: {self.error}"


class FetchResult(BaseModel):
    """Either a response or a failure; the client never raises past its boundary."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    response: Optional[httpx.Response] = None
    failure: Optional[FetchFailure] = None
    attempts: int = Field(default=1, ge=1)

    @property
    def ok(self) -> bool:
        return self.failure is None and self.response is not None

    @property
    def status_code(self) -> Optional[int]:
        if self.response is not None:
            return self.response.status_code
        return self.failure.status_code if self.failure else None

    def raise_for_failure(self) -> httpx.Response:
        """Return the response or raise TerminalFetchFailure."""
        if not self.ok:
            raise TerminalFetchFailure(self.failure)
        return self.response


class ResilientFetchClient:
    """
    Thin resilience layer over httpx.AsyncClient.

    A 5xx, a timeout or a transport error is retried up to ``retries`` times,
    sleeping ``retry_backoff_ms * attempt`` between attempts. A 4xx is
    returned immediately as a non-retryable failure with its response attached.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_options: Optional[FetchOptions] = None,
        headers: Optional[Dict[str, str]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the fetch client.

        Args:
            client: Shared httpx client; one is created (and owned) when omitted
            default_options: Options used when a request passes none
            headers: Headers sent with every request
            sleep: Coroutine used for backoff waits
        """
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(follow_redirects=True)
        self.default_options = default_options or FetchOptions()
        self.headers = headers or {}
        self._sleep = sleep
        self.sync_logger = SyncLogger("fetch_client")

    async def __aenter__(self) -> 'ResilientFetchClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying client if this instance created it."""
        if self._owns_client:
            await self.client.aclose()

    async def request(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Any] = None,
        options: Optional[FetchOptions] = None,
    ) -> FetchResult:
        """
        Perform an HTTP request with timeout and retry handling.

        Args:
            url: Absolute URL
            method: HTTP method
            headers: Extra headers for this request
            json: JSON body
            options: Resilience settings (defaults to the client's)

        Returns:
            FetchResult holding either the response or a FetchFailure
        """
        opts = options or self.default_options
        merged_headers = {**self.headers, **(headers or {})}
        last_error: Optional[TransientNetworkError] = None

        for attempt in range(1, opts.max_attempts + 1):
            try:
                response = await self._attempt(method, url, merged_headers, json, opts.timeout_ms)
            except TransientNetworkError as e:
                last_error = e
            except httpx.HTTPError as e:
                # Malformed requests, decoding errors, redirect loops: retrying cannot help.
                failure = FetchFailure(
                    url=url, method=method, error=f"{type(e).__name__}: {e}",
                    attempts=attempt, retryable=False,
                )
                self.sync_logger.log_error(failure.error, url=url, attempts=attempt)
                return FetchResult(failure=failure, attempts=attempt)
            else:
                if response.status_code >= 400:
                    failure = FetchFailure(
                        url=url, method=method, status_code=response.status_code,
                        error=f"HTTP {response.status_code}", attempts=attempt, retryable=False,
                    )
                    logger.debug("Terminal client error", url=url, status_code=response.status_code)
                    return FetchResult(response=response, failure=failure, attempts=attempt)
                return FetchResult(response=response, attempts=attempt)

            if attempt < opts.max_attempts:
                delay_ms = opts.retry_backoff_ms * attempt
                self.sync_logger.log_retry(url, attempt, opts.max_attempts, delay_ms, str(last_error))
                await self._sleep(delay_ms / 1000)

        failure = FetchFailure(
            url=url,
            method=method,
            status_code=last_error.status_code,
            error=str(last_error),
            attempts=opts.max_attempts,
            retryable=True,
            timed_out=last_error.timed_out,
        )
        self.sync_logger.log_error(failure.describe(), url=url, attempts=opts.max_attempts)
        return FetchResult(failure=failure, attempts=opts.max_attempts)

    async def _attempt(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        json: Optional[Any],
        timeout_ms: int,
    ) -> httpx.Response:
        """Run one attempt; raise TransientNetworkError for anything worth retrying."""
        timeout = timeout_ms / 1000
        try:
            response = await asyncio.wait_for(
                self.client.request(method, url, headers=headers, json=json, timeout=timeout),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransientNetworkError(f"timed out after {timeout_ms}ms", timed_out=True) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 500:
            raise TransientNetworkError(f"HTTP {response.status_code}", status_code=response.status_code)
        return response
