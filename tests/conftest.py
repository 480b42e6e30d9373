"""Shared fixtures for recipe orchestrator tests."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime, timedelta

import pytest

from recipe_orchestrator.blocks import BlockRegistry, MemoryBlockStore
from recipe_orchestrator.config import BlockSettings, RateLimitSettings
from recipe_orchestrator.models import Recipe, SourceCandidate
from recipe_orchestrator.net import AdaptiveRateLimiter


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Aware datetime clock for the block registry."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSource:
    """In-memory recipe source."""

    def __init__(
        self,
        name: str,
        recipes: list[Recipe] | None = None,
        *,
        priority: int = 1,
        confidence: int = 80,
        domain: str | None = None,
        match_threshold: float = 0.5,
        timeout_seconds: float | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        exhausted: bool = False,
        call_log: list[str] | None = None,
    ) -> None:
        self.name = name
        self.domain = domain or f"{name}.example.com"
        self.priority = priority
        self.confidence = confidence
        self.match_threshold = match_threshold
        self.timeout_seconds = timeout_seconds
        self.recipes = recipes or []
        self.error = error
        self.delay = delay
        self.exhausted = exhausted
        self.queries: list[str] = []
        self.call_log = call_log

    @property
    def calls(self) -> int:
        return len(self.queries)

    async def search(self, query: str) -> list[SourceCandidate]:
        self.queries.append(query)
        if self.call_log is not None:
            self.call_log.append(self.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [
            SourceCandidate(recipe=r, source_id=self.name, confidence=self.confidence)
            for r in self.recipes
        ]

    def is_exhausted(self) -> bool:
        return self.exhausted


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def limiter_settings() -> RateLimitSettings:
    return RateLimitSettings(requests_per_second=1.0, burst_size=0, simulate_human_behavior=False)


@pytest.fixture
def limiter(clock: FakeClock, limiter_settings: RateLimitSettings) -> AdaptiveRateLimiter:
    return AdaptiveRateLimiter(
        settings=limiter_settings,
        clock=clock,
        sleep=clock.sleep,
        rng=random.Random(42),
    )


@pytest.fixture
def registry(wall_clock: FakeWallClock) -> BlockRegistry:
    return BlockRegistry(store=MemoryBlockStore(), settings=BlockSettings(store="memory"), now=wall_clock)


@pytest.fixture
def make_source():
    """Factory for ``FakeSource`` instances."""
    return FakeSource
