"""Multi-source recipe aggregation.

Sources are queried one at a time in priority order. Each call is gated by
the block registry and the adaptive rate limiter and bounded by a timeout.
Matching candidates pass through the dedup index, and the survivors are
merged into a single recipe.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

import structlog

from recipe_orchestrator.blocks.registry import BlockRegistry
from recipe_orchestrator.config import AggregatorSettings
from recipe_orchestrator.dedup import DedupIndex
from recipe_orchestrator.errors import (
    AccessBlocked,
    NoCandidatesFound,
    ParseError,
    QuotaExhausted,
    RateLimited,
    SourceError,
    SourceTimeout,
)
from recipe_orchestrator.models.candidate import (
    AggregatedResult,
    AttemptOutcome,
    DuplicateRejection,
    SourceAttempt,
    SourceCandidate,
)
from recipe_orchestrator.models.recipe import Recipe, completeness_of
from recipe_orchestrator.net import AdaptiveRateLimiter
from recipe_orchestrator.sources.base import RecipeSource
from recipe_orchestrator.utils.normalize import simplify_query, title_from_url
from recipe_orchestrator.utils.similarity import best_match

logger = structlog.get_logger(__name__)

# Scalar fields a lower-confidence candidate may fill in when the base lacks them
FILL_FIELDS = (
    "description",
    "image_url",
    "servings",
    "prep_time",
    "cook_time",
    "total_time",
    "nutrition",
    "cuisine",
    "author",
    "source_url",
)


@dataclass
class SourceMetrics:
    """Metrics tracking for a single source."""
    total_searches: int = 0
    successful_searches: int = 0
    failed_searches: int = 0
    skipped: int = 0
    accepted: int = 0
    total_latency_ms: float = 0.0
    error_counts: dict[str, int] = field(default_factory=dict)
    last_error: str | None = None

    @property
    def success_rate(self) -> float:
        if self.total_searches == 0:
            return 1.0
        return self.successful_searches / self.total_searches

    @property
    def avg_latency_ms(self) -> float:
        if self.successful_searches == 0:
            return 0.0
        return self.total_latency_ms / self.successful_searches


def merge_candidates(candidates: list[SourceCandidate]) -> Recipe:
    """Merge accepted candidates (given in priority order) into one recipe.

    The highest-confidence candidate is the base; earlier candidates win
    ties. Others only fill gaps: empty scalar fields, new tags, and
    ingredient or instruction lists that are strictly longer.
    """
    if not candidates:
        raise ValueError("nothing to merge")

    base_index = max(range(len(candidates)), key=lambda i: (candidates[i].confidence, -i))
    merged = candidates[base_index].recipe.model_copy(deep=True)

    for index, candidate in enumerate(candidates):
        if index == base_index:
            continue
        other = candidate.recipe
        for name in FILL_FIELDS:
            value = getattr(other, name)
            if not getattr(merged, name) and value:
                setattr(merged, name, value)
        for tag in other.tags:
            if tag not in merged.tags:
                merged.tags.append(tag)
        if len(other.ingredients) > len(merged.ingredients):
            merged.ingredients = [i.model_copy() for i in other.ingredients]
        if len(other.instructions) > len(merged.instructions):
            merged.instructions = list(other.instructions)
    return merged


def combined_coverage(candidates: list[SourceCandidate]) -> int:
    """Completeness of the union of fields populated across candidates."""
    fields: set[str] = set()
    for c in candidates:
        fields |= c.recipe.populated_fields()
    return completeness_of(fields)


class SourceAggregator:
    """Ranked cascade over registered recipe sources.

    Args:
        limiter: Shared adaptive rate limiter
        registry: Shared block registry
        settings: Cascade thresholds
    """

    def __init__(
        self,
        limiter: AdaptiveRateLimiter,
        registry: BlockRegistry,
        settings: AggregatorSettings | None = None,
    ) -> None:
        self.limiter = limiter
        self.registry = registry
        self.settings = settings or AggregatorSettings()
        self._sources: dict[str, RecipeSource] = {}
        self._metrics: dict[str, SourceMetrics] = {}

    def register_source(self, source: RecipeSource) -> None:
        """Register a source. Registration order breaks priority ties."""
        key = source.name.lower()
        self._sources[key] = source
        self._metrics[key] = SourceMetrics()

    def unregister_source(self, source_name: str) -> None:
        key = source_name.lower()
        self._sources.pop(key, None)
        self._metrics.pop(key, None)

    @property
    def available_sources(self) -> list[str]:
        return [s.name for s in self._ordered_sources()]

    def get_metrics(self, source_name: str | None = None) -> dict[str, SourceMetrics] | SourceMetrics | None:
        if source_name:
            return self._metrics.get(source_name.lower())
        return self._metrics.copy()

    def _ordered_sources(self) -> list[RecipeSource]:
        # sorted() is stable, so equal priorities keep registration order
        return sorted(self._sources.values(), key=lambda s: s.priority)

    async def aggregate(self, query: str, hint_url: str | None = None) -> AggregatedResult:
        """Run the cascade for ``query`` and merge what it finds.

        Args:
            query: Recipe name as the caller typed it
            hint_url: Recipe page URL; its slug names the recipe when
                ``query`` is empty

        Raises:
            NoCandidatesFound: No source produced an accepted candidate
        """
        start = time.perf_counter()
        query = (query or "").strip()
        if not query and hint_url:
            query = title_from_url(hint_url)
        if not query:
            raise NoCandidatesFound(query)

        search_query = query
        if self.settings.simplify_queries:
            search_query = simplify_query(query) or query

        log = logger.bind(query=query)
        log.info("aggregate.start", search_query=search_query, sources=len(self._sources))

        accepted: list[SourceCandidate] = []
        attempts: list[SourceAttempt] = []
        rejections: list[DuplicateRejection] = []
        complete_streak = 0
        # Duplicates are judged within this call only
        dedup = DedupIndex(
            title_threshold=self.settings.title_duplicate_threshold,
            ingredient_threshold=self.settings.ingredient_duplicate_threshold,
        )

        for source in self._ordered_sources():
            attempt, candidate = await self._query_source(source, query, search_query)
            attempts.append(attempt)

            if candidate is not None:
                rejection = dedup.admit(candidate)
                if rejection is not None:
                    attempt.outcome = AttemptOutcome.DUPLICATE
                    attempt.detail = f"duplicate of {rejection.matched_title!r}"
                    rejections.append(rejection)
                    candidate = None
                else:
                    accepted.append(candidate)
                    self._metrics[source.name.lower()].accepted += 1

            if candidate is not None:
                if candidate.completeness >= self.settings.high_completeness:
                    complete_streak += 1
                else:
                    complete_streak = 0
            elif not attempt.outcome.skipped:
                complete_streak = 0

            if complete_streak >= self.settings.consecutive_complete_sources:
                log.info("aggregate.early_stop", reason="consecutive_complete", after=source.name)
                break
            if accepted and combined_coverage(accepted) >= self.settings.coverage_threshold:
                log.info("aggregate.early_stop", reason="coverage", after=source.name)
                break

        elapsed_ms = (time.perf_counter() - start) * 1000
        if not accepted:
            log.warning("aggregate.no_candidates", attempts=len(attempts), rejections=len(rejections))
            raise NoCandidatesFound(query, attempts=attempts, rejections=rejections)

        recipe = merge_candidates(accepted)
        result = AggregatedResult(
            recipe=recipe,
            sources=[c.source_id for c in accepted],
            combined_confidence=sum(c.confidence for c in accepted) / len(accepted),
            combined_completeness=recipe.completeness(),
            attempts=attempts,
            rejections=rejections,
            processing_time_ms=elapsed_ms,
        )
        log.info(
            "aggregate.done",
            sources=result.sources,
            completeness=result.combined_completeness,
            confidence=round(result.combined_confidence, 1),
            elapsed_ms=round(elapsed_ms, 1),
        )
        return result

    async def _query_source(
        self,
        source: RecipeSource,
        query: str,
        search_query: str,
    ) -> tuple[SourceAttempt, SourceCandidate | None]:
        """Call one source and classify what happened."""
        name = source.name
        metrics = self._metrics.setdefault(name.lower(), SourceMetrics())

        if source.is_exhausted():
            metrics.skipped += 1
            return SourceAttempt(name, AttemptOutcome.QUOTA_EXHAUSTED), None
        # Registry calls hit the store; keep them off the event loop
        if await asyncio.to_thread(self.registry.is_blocked, source.domain):
            metrics.skipped += 1
            logger.info("source.skipped_blocked", source=name, domain=source.domain)
            return SourceAttempt(name, AttemptOutcome.BLOCKED), None

        await self.limiter.wait_for_slot(source.domain)

        timeout = source.timeout_seconds or self.settings.default_timeout_seconds
        metrics.total_searches += 1
        start = time.perf_counter()
        try:
            candidates = await asyncio.wait_for(source.search(search_query), timeout=timeout)
        except (asyncio.TimeoutError, SourceTimeout):
            latency_ms = (time.perf_counter() - start) * 1000
            self.limiter.report_outcome(source.domain, 408, response_time_ms=latency_ms)
            return self._failed(metrics, name, AttemptOutcome.TIMEOUT, latency_ms, f"timeout after {timeout}s"), None
        except QuotaExhausted as e:
            metrics.total_searches -= 1
            metrics.skipped += 1
            return SourceAttempt(name, AttemptOutcome.QUOTA_EXHAUSTED, detail=str(e)), None
        except ParseError as e:
            latency_ms = (time.perf_counter() - start) * 1000
            self.limiter.report_outcome(source.domain, e.status_code or 200, response_time_ms=latency_ms)
            return self._failed(metrics, name, AttemptOutcome.PARSE_ERROR, latency_ms, str(e)), None
        except SourceError as e:
            latency_ms = (time.perf_counter() - start) * 1000
            outcome, status = self._classify_error(e)
            self.limiter.report_outcome(
                source.domain, status, response_time_ms=latency_ms, retry_after=e.retry_after
            )
            await asyncio.to_thread(self.registry.record_failure, source.domain, str(e))
            return self._failed(metrics, name, outcome, latency_ms, str(e)), None

        latency_ms = (time.perf_counter() - start) * 1000
        self.limiter.report_outcome(source.domain, 200, response_time_ms=latency_ms)
        await asyncio.to_thread(self.registry.record_success, source.domain)
        metrics.successful_searches += 1
        metrics.total_latency_ms += latency_ms

        if not candidates:
            return SourceAttempt(name, AttemptOutcome.EMPTY, latency_ms), None

        match = best_match(query, candidates, key=lambda c: c.recipe.title, threshold=source.match_threshold)
        if match is None:
            logger.debug("source.no_match", source=name, candidates=len(candidates))
            return SourceAttempt(name, AttemptOutcome.NO_MATCH, latency_ms), None

        best, score = match
        completeness = best.recipe.completeness()
        candidate = best.model_copy(
            update={
                "source_id": best.source_id or name,
                "completeness": completeness,
                "match_score": round(score, 4),
            }
        )
        logger.info(
            "source.match",
            source=name,
            title=candidate.recipe.title,
            completeness=completeness,
            match=candidate.match_score,
        )
        attempt = SourceAttempt(name, AttemptOutcome.ACCEPTED, latency_ms, completeness=completeness)
        return attempt, candidate

    def _classify_error(self, error: SourceError) -> tuple[AttemptOutcome, int]:
        """Outcome kind and the status to report to the limiter."""
        if isinstance(error, RateLimited):
            return AttemptOutcome.RATE_LIMITED, error.status_code or 429
        if isinstance(error, AccessBlocked):
            return AttemptOutcome.ACCESS_BLOCKED, error.status_code or 403
        # NetworkError and anything else in the transport family
        return AttemptOutcome.NETWORK_ERROR, error.status_code or 500

    @staticmethod
    def _failed(
        metrics: SourceMetrics,
        name: str,
        outcome: AttemptOutcome,
        latency_ms: float,
        detail: str,
    ) -> SourceAttempt:
        metrics.failed_searches += 1
        metrics.error_counts[outcome.value] = metrics.error_counts.get(outcome.value, 0) + 1
        metrics.last_error = detail
        logger.warning("source.failed", source=name, outcome=outcome.value, error=detail)
        return SourceAttempt(name, outcome, latency_ms, detail=detail)

    async def close(self) -> None:
        """Close all source connections."""
        for source in self._sources.values():
            if hasattr(source, "close"):
                await source.close()

    async def __aenter__(self) -> SourceAggregator:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False
