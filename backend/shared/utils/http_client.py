"""
Async HTTP client wrapper for provider requests.

One request per call, no retries: retry policy belongs to the scheduler, which
spaces attempts out by its poll interval. Every failure surfaces as a typed
ProviderError so callers can tell a bad credential from a throttle from noise.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import httpx

from shared.config import get_settings
from shared.models.enums import FailureKind
from shared.utils.logging import get_logger
from shared.utils.metrics import PROVIDER_LATENCY, PROVIDER_REQUESTS

logger = get_logger(__name__)


class ProviderError(Exception):
    """Base class for provider failures. `kind` drives the retry policy."""

    kind: FailureKind = FailureKind.TRANSIENT

    def __init__(self, provider: str, message: str, status: Optional[int] = None) -> None:
        self.provider = provider
        self.status = status
        super().__init__(f"{provider}: {message}")


class UnauthorizedError(ProviderError):
    kind = FailureKind.UNAUTHORIZED


class RateLimitedError(ProviderError):
    kind = FailureKind.RATE_LIMITED

    def __init__(
        self, provider: str, message: str, status: Optional[int] = None, retry_after: Optional[float] = None
    ) -> None:
        super().__init__(provider, message, status)
        self.retry_after = retry_after


class TransientError(ProviderError):
    kind = FailureKind.TRANSIENT


class MalformedResponseError(ProviderError):
    kind = FailureKind.MALFORMED


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ProviderHTTPClient:
    """
    Async HTTP client tailored for sports data provider APIs.
    Handles timeouts, status classification, and per-request metrics.
    """

    def __init__(
        self,
        provider_name: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._provider = provider_name
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.provider_request_timeout_s
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def provider(self) -> str:
        return self._provider

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        endpoint: str = "unknown",
    ) -> Any:
        """
        Perform a single GET and return the decoded JSON body.

        Args:
            path: API path relative to base_url.
            params: Query parameters; a list of pairs allows repeated keys (``team_ids[]``).
            endpoint: Endpoint label for metrics.

        Raises:
            UnauthorizedError: 401/403.
            RateLimitedError: 429.
            TransientError: timeouts, connection errors, 5xx and other unexpected statuses.
            MalformedResponseError: body is not JSON.
        """
        if not self._client:
            raise RuntimeError("ProviderHTTPClient not started. Call start() first.")

        start_time = time.perf_counter()
        status = "error"
        try:
            try:
                resp = await self._client.get(path, params=params)
            except httpx.TimeoutException as exc:
                status = "timeout"
                logger.warning("provider_timeout", provider=self._provider, path=path)
                raise TransientError(self._provider, f"timeout on {path}") from exc
            except httpx.TransportError as exc:
                logger.warning("provider_transport_error", provider=self._provider, path=path, error=str(exc))
                raise TransientError(self._provider, f"transport error on {path}: {exc}") from exc

            status = str(resp.status_code)
            self._raise_for_status(resp, path)

            try:
                body = resp.json()
            except ValueError as exc:
                logger.warning("provider_malformed_body", provider=self._provider, path=path)
                raise MalformedResponseError(
                    self._provider, f"non-JSON body from {path}", resp.status_code
                ) from exc

            logger.debug(
                "provider_request_success",
                provider=self._provider,
                path=path,
                status=resp.status_code,
                latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            return body
        finally:
            PROVIDER_REQUESTS.labels(provider=self._provider, endpoint=endpoint, status=status).inc()
            PROVIDER_LATENCY.labels(provider=self._provider).observe(time.perf_counter() - start_time)

    def _raise_for_status(self, resp: httpx.Response, path: str) -> None:
        code = resp.status_code
        if code < 400:
            return
        if code in (401, 403):
            logger.error("provider_unauthorized", provider=self._provider, path=path, status=code)
            raise UnauthorizedError(self._provider, f"HTTP {code} on {path}", code)
        if code == 429:
            retry_after = _retry_after(resp)
            logger.warning("provider_rate_limited", provider=self._provider, path=path, retry_after=retry_after)
            raise RateLimitedError(self._provider, f"HTTP 429 on {path}", code, retry_after)
        logger.warning("provider_http_error", provider=self._provider, path=path, status=code)
        raise TransientError(self._provider, f"HTTP {code} on {path}", code)
