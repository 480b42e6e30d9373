"""Base interface for recipe sources."""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from recipe_orchestrator.errors import NetworkError, ParseError, QuotaExhausted
from recipe_orchestrator.models.candidate import SourceCandidate
from recipe_orchestrator.models.recipe import Recipe
from recipe_orchestrator.sources.http import HttpClient

logger = structlog.get_logger(__name__)


@runtime_checkable
class RecipeSource(Protocol):
    """Protocol all recipe sources implement.

    Lower ``priority`` is queried first. ``match_threshold`` is the minimum
    title similarity for a candidate to count as a match.
    """

    name: str
    domain: str
    priority: int
    confidence: int
    match_threshold: float
    timeout_seconds: float | None

    async def search(self, query: str) -> list[SourceCandidate]:
        """Return candidates for ``query``; ``[]`` when there are none.

        Raises a ``SourceError`` on transport failure and ``ParseError`` on
        an unreadable response.
        """
        ...

    def is_exhausted(self) -> bool:
        """True when the source's quota is used up."""
        ...


class DailyQuota:
    """Request allowance that resets at UTC midnight."""

    def __init__(self, limit: int | None, today: Callable[[], date] | None = None) -> None:
        self.limit = limit
        self._today = today or (lambda: datetime.now(UTC).date())
        self._day = self._today()
        self._used = 0
        self._lock = threading.Lock()

    def _roll(self) -> None:
        today = self._today()
        if today != self._day:
            self._day = today
            self._used = 0

    @property
    def used(self) -> int:
        with self._lock:
            self._roll()
            return self._used

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.used >= self.limit

    @property
    def resets_at(self) -> str:
        return (datetime.combine(self._day, datetime.min.time(), tzinfo=UTC) + timedelta(days=1)).isoformat()

    def consume(self, source_id: str, n: int = 1) -> None:
        """Count ``n`` requests, raising ``QuotaExhausted`` if none remain."""
        with self._lock:
            self._roll()
            if self.limit is not None and self._used + n > self.limit:
                raise QuotaExhausted(source_id, resets_at=self.resets_at)
            self._used += n


class BaseSource(ABC):
    """Abstract base for JSON API recipe sources."""

    name: str = "base"
    domain: str = ""
    base_url: str = ""
    priority: int = 100
    confidence: int = 50
    match_threshold: float = 0.5
    timeout_seconds: float | None = None
    daily_limit: int | None = None
    max_attempts: int = 3

    def __init__(self, http: HttpClient | None = None, api_key: str | None = None) -> None:
        self.http = http or HttpClient()
        self.api_key = api_key
        self.quota = DailyQuota(self.daily_limit)

    @abstractmethod
    async def search(self, query: str) -> list[SourceCandidate]:
        """Search for recipes matching the query."""

    def is_exhausted(self) -> bool:
        return self.quota.exhausted

    def _candidate(self, recipe: Recipe) -> SourceCandidate:
        return SourceCandidate(
            recipe=recipe,
            source_id=self.name,
            confidence=self.confidence,
            completeness=recipe.completeness(),
        )

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """GET a JSON document, retrying transient network failures.

        Rate limiting and access errors are not retried here; they go
        back to the caller so the domain can be throttled or blocked.
        """
        self.quota.consume(self.name)

        @retry(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential_jitter(initial=0.5, max=4.0),
            retry=retry_if_exception_type(NetworkError),
        )
        async def _do() -> Any:
            response = await self.http.fetch(
                url, params=params, timeout=self.timeout_seconds, source_id=self.name
            )
            return response.json()

        try:
            return await _do()
        except ParseError as e:
            e.source_id = self.name
            logger.warning("source.parse_error", source=self.name, url=url, error=str(e))
            raise

    async def close(self) -> None:
        await self.http.close()

    async def __aenter__(self) -> BaseSource:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
