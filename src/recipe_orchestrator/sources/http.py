"""HTTP client used by recipe source adapters.

Wraps ``httpx.AsyncClient`` and turns failing responses into the typed
``SourceError`` family. ``fetch_many`` fans out over a bounded worker pool
in batches with a pause between batches.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog

from recipe_orchestrator.errors import (
    AccessBlocked,
    NetworkError,
    ParseError,
    RateLimited,
    SourceError,
    SourceTimeout,
)
from recipe_orchestrator.net import AdaptiveRateLimiter

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "recipe-orchestrator/0.1 (+https://github.com/recipe-orchestrator)"

# Body markers of bot challenges served with an error status
_CHALLENGE_MARKERS = ("cf-ray", "cloudflare", "captcha", "attention required")


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


@dataclass
class FetchResponse:
    """A successful response."""
    status: int
    body: str
    latency_ms: float
    url: str
    headers: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        try:
            return json.loads(self.body)
        except json.JSONDecodeError as e:
            raise ParseError(f"invalid JSON from {self.url}: {e}", status_code=self.status) from e


def raise_for_status(response: httpx.Response, source_id: str | None = None) -> None:
    """Raise the matching ``SourceError`` for a failing response.

    - 429, 502, 503 -> RateLimited (with Retry-After when present)
    - 403, or an error page carrying a bot challenge -> AccessBlocked
    - any other status >= 400 -> NetworkError
    """
    status = response.status_code
    if status < 400:
        return

    try:
        url = str(response.request.url)
    except RuntimeError:
        # Response built without a request
        url = None
    retry_after = parse_retry_after(response.headers.get("retry-after"))
    kwargs = {"source_id": source_id, "url": url, "status_code": status, "retry_after": retry_after}

    if status in (429, 502, 503):
        raise RateLimited(f"HTTP {status} rate limit from {url}", **kwargs)
    if status == 403:
        raise AccessBlocked(f"HTTP 403 Forbidden from {url}", **kwargs)

    body = response.text[:2000].lower()
    if any(marker in body for marker in _CHALLENGE_MARKERS):
        raise AccessBlocked(f"HTTP {status} bot challenge (cloudflare/captcha) from {url}", **kwargs)
    raise NetworkError(f"HTTP {status} from {url}", **kwargs)


class HttpClient:
    """Thin async HTTP client with typed errors.

    When a limiter is given, every request waits for a slot first and
    reports its outcome afterwards.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        limiter: AdaptiveRateLimiter | None = None,
        timeout: float = 30.0,
        concurrency: int = 5,
        batch_delay: float = 1.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.limiter = limiter
        self.timeout = timeout
        self.concurrency = max(2, min(10, concurrency))
        self.batch_delay = batch_delay
        self.user_agent = user_agent

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
            )
        return self._client

    async def fetch(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        priority: int = 5,
        source_id: str | None = None,
    ) -> FetchResponse:
        """GET ``url`` and return the response, or raise a ``SourceError``."""
        if self.limiter is not None:
            await self.limiter.wait_for_slot(url, priority=priority)

        client = self._get_client()
        start = time.perf_counter()
        try:
            response = await client.get(url, params=params, timeout=timeout or self.timeout)
        except httpx.TimeoutException as e:
            latency_ms = (time.perf_counter() - start) * 1000
            self._report(url, 408, latency_ms)
            raise SourceTimeout(f"request to {url} timed out", source_id=source_id, url=url) from e
        except httpx.TransportError as e:
            logger.warning("http.transport_error", url=url, error=str(e))
            raise NetworkError(f"{type(e).__name__}: {e}", source_id=source_id, url=url) from e

        latency_ms = (time.perf_counter() - start) * 1000
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        self._report(url, response.status_code, latency_ms, retry_after)
        logger.debug("http.fetch", url=url, status=response.status_code, latency_ms=round(latency_ms, 1))

        raise_for_status(response, source_id=source_id)
        return FetchResponse(
            status=response.status_code,
            body=response.text,
            latency_ms=latency_ms,
            url=str(response.url),
            headers=dict(response.headers),
        )

    async def fetch_many(
        self,
        urls: list[str],
        *,
        concurrency: int | None = None,
        batch_delay: float | None = None,
        timeout: float | None = None,
        source_id: str | None = None,
    ) -> list[FetchResponse | SourceError]:
        """Fetch several URLs, one batch of ``concurrency`` at a time.

        Results come back in input order; failures are returned in place
        rather than raised.
        """
        size = max(2, min(10, concurrency or self.concurrency))
        delay = self.batch_delay if batch_delay is None else batch_delay
        semaphore = asyncio.Semaphore(size)

        async def worker(url: str) -> FetchResponse | SourceError:
            async with semaphore:
                try:
                    return await self.fetch(url, timeout=timeout, source_id=source_id)
                except SourceError as e:
                    return e

        results: list[FetchResponse | SourceError] = []
        for offset in range(0, len(urls), size):
            batch = urls[offset:offset + size]
            results.extend(await asyncio.gather(*(worker(u) for u in batch)))
            if offset + size < len(urls) and delay > 0:
                await asyncio.sleep(delay)
        failed = sum(1 for r in results if isinstance(r, SourceError))
        logger.info("http.fetch_many", total=len(urls), failed=failed, batch_size=size)
        return results

    def _report(self, url: str, status: int, latency_ms: float, retry_after: float | None = None) -> None:
        if self.limiter is not None:
            self.limiter.report_outcome(url, status, response_time_ms=latency_ms, retry_after=retry_after)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
