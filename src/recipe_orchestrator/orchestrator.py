"""Wiring for the orchestrator services.

There are no module-level singletons: ``build_orchestrator`` creates one
limiter and one registry and hands the same instances to every consumer.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog

from recipe_orchestrator.blocks.registry import BlockRegistry
from recipe_orchestrator.blocks.store import open_store
from recipe_orchestrator.config import OrchestratorSettings
from recipe_orchestrator.models.candidate import AggregatedResult
from recipe_orchestrator.net import AdaptiveRateLimiter
from recipe_orchestrator.sources.aggregator import SourceAggregator
from recipe_orchestrator.sources.base import RecipeSource
from recipe_orchestrator.sources.dummyjson import DummyJSONSource
from recipe_orchestrator.sources.http import HttpClient
from recipe_orchestrator.sources.themealdb import TheMealDBSource

logger = structlog.get_logger(__name__)


@dataclass
class Orchestrator:
    """Explicit bundle of the shared services."""
    settings: OrchestratorSettings
    limiter: AdaptiveRateLimiter
    registry: BlockRegistry
    http: HttpClient
    aggregator: SourceAggregator

    async def aggregate(self, query: str, hint_url: str | None = None) -> AggregatedResult:
        return await self.aggregator.aggregate(query, hint_url=hint_url)

    async def close(self) -> None:
        await self.limiter.close()
        await self.aggregator.close()
        await self.http.close()

    async def __aenter__(self) -> Orchestrator:
        self.limiter.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False


def default_sources(http: HttpClient) -> list[RecipeSource]:
    """The built-in free JSON API sources."""
    return [TheMealDBSource(http=http), DummyJSONSource(http=http)]


def build_orchestrator(
    settings: OrchestratorSettings | None = None,
    sources: Iterable[RecipeSource] | None = None,
    http: HttpClient | None = None,
) -> Orchestrator:
    """Construct the services from settings.

    Args:
        settings: Configuration (defaults when omitted)
        sources: Sources to register; the built-in adapters when omitted
        http: Network client shared by the built-in adapters
    """
    settings = settings or OrchestratorSettings()

    limiter = AdaptiveRateLimiter(settings=settings.rate_limit)
    store = open_store(settings.blocks.store, settings.blocks.path)
    registry = BlockRegistry(store=store, settings=settings.blocks)
    # The aggregator gates source calls itself, so the shared client does not
    http = http or HttpClient(timeout=settings.aggregator.default_timeout_seconds)
    aggregator = SourceAggregator(limiter, registry, settings=settings.aggregator)

    for source in (sources if sources is not None else default_sources(http)):
        aggregator.register_source(source)

    logger.debug(
        "orchestrator.built",
        sources=aggregator.available_sources,
        block_store=settings.blocks.store,
    )
    return Orchestrator(
        settings=settings,
        limiter=limiter,
        registry=registry,
        http=http,
        aggregator=aggregator,
    )
