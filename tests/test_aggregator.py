"""Tests for the multi-source aggregation cascade."""

from __future__ import annotations

import threading

import pytest

from recipe_orchestrator.blocks import BlockRegistry, MemoryBlockStore
from recipe_orchestrator.config import AggregatorSettings, BlockSettings
from recipe_orchestrator.errors import (
    AccessBlocked,
    NetworkError,
    NoCandidatesFound,
    ParseError,
    QuotaExhausted,
    RateLimited,
    SourceTimeout,
)
from recipe_orchestrator.models import AttemptOutcome, BlockErrorType, Recipe
from recipe_orchestrator.sources.aggregator import SourceAggregator

COOKIE_INGREDIENTS = ["2 cups flour", "1 cup butter", "1 cup chocolate chips", "2 eggs"]


def recipe_with_completeness(title: str, completeness: int, ingredients: list[str]) -> Recipe:
    """Build a recipe scoring 40, 60 or 85."""
    fields: dict = {"title": title, "ingredients": ingredients}
    if completeness == 40:
        fields["image_url"] = "https://img/x.jpg"
    if completeness >= 60:
        fields["instructions"] = ["Mix", "Bake"]
    if completeness == 85:
        fields.update(nutrition={"calories": 200}, servings=8, prep_time=15, cuisine="American")
    recipe = Recipe(**fields)
    assert recipe.completeness() == completeness
    return recipe


@pytest.fixture
def aggregator(limiter, registry) -> SourceAggregator:
    return SourceAggregator(limiter, registry)


class TestCascade:
    @pytest.mark.asyncio
    async def test_stops_once_coverage_is_reached(self, aggregator, make_source):
        s1 = make_source("one", [recipe_with_completeness("Banana Bread", 40, ["3 ripe bananas", "2 cups flour"])], priority=1)
        s2 = make_source(
            "two",
            [recipe_with_completeness("Banana Bread", 85, ["butter", "eggs", "baking soda", "vanilla extract", "salt"])],
            priority=2,
        )
        s3 = make_source("three", [recipe_with_completeness("Banana Bread", 60, ["sugar", "walnuts"])], priority=3)
        for s in (s3, s1, s2):
            aggregator.register_source(s)

        result = await aggregator.aggregate("Banana Bread")

        assert s1.calls == 1
        assert s2.calls == 1
        assert s3.calls == 0
        assert result.sources == ["one", "two"]
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.ACCEPTED, AttemptOutcome.ACCEPTED]

    @pytest.mark.asyncio
    async def test_two_consecutive_complete_sources_stop(self, limiter, registry, make_source):
        settings = AggregatorSettings(coverage_threshold=101)
        aggregator = SourceAggregator(limiter, registry, settings=settings)
        s1 = make_source("one", [recipe_with_completeness("Pad Thai", 85, ["rice noodles", "tamarind"])], priority=1)
        s2 = make_source("two", [recipe_with_completeness("Pad Thai", 85, ["shrimp", "peanuts", "lime", "bean sprouts"])], priority=2)
        s3 = make_source("three", [recipe_with_completeness("Pad Thai", 85, ["tofu"])], priority=3)
        for s in (s1, s2, s3):
            aggregator.register_source(s)

        result = await aggregator.aggregate("Pad Thai")

        assert s3.calls == 0
        assert result.sources == ["one", "two"]

    @pytest.mark.asyncio
    async def test_merge_combines_fields_and_averages_confidence(self, aggregator, make_source):
        a = make_source(
            "a",
            [Recipe(title="Pancakes", ingredients=["flour", "milk", "eggs"], instructions=["Mix", "Fry"])],
            priority=1,
            confidence=90,
        )
        b = make_source("b", [Recipe(title="Pancakes", nutrition={"calories": 220})], priority=2, confidence=70)
        aggregator.register_source(a)
        aggregator.register_source(b)

        result = await aggregator.aggregate("Pancakes")

        assert result.recipe.ingredients
        assert result.recipe.instructions
        assert result.recipe.nutrition == {"calories": 220}
        assert result.combined_confidence == 80
        assert result.combined_completeness == result.recipe.completeness() == 70
        assert result.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_near_duplicate_rejected_from_merge(self, aggregator, make_source):
        a = make_source("a", [Recipe(title="Chocolate Chip Cookies", ingredients=COOKIE_INGREDIENTS)], priority=1, confidence=90)
        b = make_source(
            "b",
            [Recipe(title="Chocolate Chip Cookie", ingredients=COOKIE_INGREDIENTS, cuisine="American")],
            priority=2,
            confidence=60,
        )
        aggregator.register_source(a)
        aggregator.register_source(b)

        result = await aggregator.aggregate("Chocolate Chip Cookies")

        assert result.sources == ["a"]
        assert result.recipe.cuisine is None
        assert result.combined_confidence == 90
        assert len(result.rejections) == 1
        rejection = result.rejections[0]
        assert rejection.source_id == "b"
        assert rejection.similarity >= 0.6
        assert result.attempts[1].outcome == AttemptOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_best_match_per_source(self, aggregator, make_source):
        source = make_source(
            "a",
            [Recipe(title="Beef Stew"), Recipe(title="Banana Bread", ingredients=["banana"]), Recipe(title="Banana Cake")],
        )
        aggregator.register_source(source)

        result = await aggregator.aggregate("Banana Bread")

        assert result.recipe.title == "Banana Bread"
        assert result.attempts[0].completeness == 35

    @pytest.mark.asyncio
    async def test_priority_ties_keep_registration_order(self, aggregator, make_source):
        calls: list[str] = []
        for name in ("first", "second", "third"):
            aggregator.register_source(make_source(name, [], priority=5, call_log=calls))
        aggregator.register_source(make_source("zero", [], priority=0, call_log=calls))

        with pytest.raises(NoCandidatesFound):
            await aggregator.aggregate("Soup")
        assert calls == ["zero", "first", "second", "third"]

    @pytest.mark.asyncio
    async def test_query_is_simplified_for_sources(self, aggregator, make_source):
        source = make_source("a", [Recipe(title="Banana Bread", ingredients=["banana"])])
        aggregator.register_source(source)

        result = await aggregator.aggregate("The Best Easy Banana Bread Recipe")

        assert source.queries == ["banana bread"]
        assert result.recipe.title == "Banana Bread"

    @pytest.mark.asyncio
    async def test_name_recovered_from_url(self, aggregator, make_source):
        source = make_source("a", [Recipe(title="Banana Bread", ingredients=["banana"])])
        aggregator.register_source(source)

        result = await aggregator.aggregate("", hint_url="https://www.site.com/recipes/banana-bread")

        assert source.queries == ["banana bread"]
        assert result.sources == ["a"]

    @pytest.mark.asyncio
    async def test_repeated_query_returns_same_result(self, aggregator, make_source):
        a = make_source("a", [Recipe(title="Pancakes", ingredients=["flour", "milk"])], priority=1, confidence=90)
        b = make_source("b", [Recipe(title="Pancakes", nutrition={"calories": 200})], priority=2, confidence=70)
        aggregator.register_source(a)
        aggregator.register_source(b)

        first = await aggregator.aggregate("Pancakes")
        second = await aggregator.aggregate("Pancakes")

        assert second.recipe == first.recipe
        assert second.sources == first.sources == ["a", "b"]
        assert second.combined_confidence == first.combined_confidence
        assert second.combined_completeness == first.combined_completeness
        assert [x.outcome for x in second.attempts] == [x.outcome for x in first.attempts]
        assert second.rejections == []

    @pytest.mark.asyncio
    async def test_single_complete_candidate_stops_cascade(self, aggregator, make_source):
        s1 = make_source("one", [recipe_with_completeness("Banana Bread", 85, ["3 ripe bananas", "2 cups flour"])], priority=1)
        s2 = make_source("two", [Recipe(title="Banana Bread", ingredients=["butter"])], priority=2)
        aggregator.register_source(s1)
        aggregator.register_source(s2)

        result = await aggregator.aggregate("Banana Bread")

        assert s1.calls == 1
        assert s2.calls == 0
        assert result.sources == ["one"]

    @pytest.mark.asyncio
    async def test_duplicate_thresholds_from_settings(self, limiter, registry, make_source):
        settings = AggregatorSettings(title_duplicate_threshold=1.0)
        aggregator = SourceAggregator(limiter, registry, settings=settings)
        aggregator.register_source(make_source("a", [Recipe(title="Chocolate Chip Cookies", ingredients=COOKIE_INGREDIENTS)], priority=1))
        aggregator.register_source(make_source("b", [Recipe(title="Chocolate Chip Cookie", ingredients=COOKIE_INGREDIENTS)], priority=2))

        result = await aggregator.aggregate("Chocolate Chip Cookies")

        assert result.sources == ["a", "b"]
        assert result.rejections == []


class TestSkipsAndFailures:
    @pytest.mark.asyncio
    async def test_blocked_source_is_skipped(self, aggregator, registry, make_source):
        blocked = make_source("blocked", [Recipe(title="Soup", ingredients=["water"])], priority=1, domain="blocked.com")
        ok = make_source("ok", [Recipe(title="Soup", ingredients=["stock"])], priority=2)
        for _ in range(5):
            registry.record_failure("https://blocked.com", "403 Forbidden")
        aggregator.register_source(blocked)
        aggregator.register_source(ok)

        result = await aggregator.aggregate("Soup")

        assert blocked.calls == 0
        assert result.sources == ["ok"]
        assert result.attempts[0].outcome == AttemptOutcome.BLOCKED
        assert result.attempts[0].outcome.skipped

    @pytest.mark.asyncio
    async def test_exhausted_source_is_skipped(self, aggregator, make_source):
        spent = make_source("spent", [Recipe(title="Soup")], priority=1, exhausted=True)
        ok = make_source("ok", [Recipe(title="Soup", ingredients=["stock"])], priority=2)
        aggregator.register_source(spent)
        aggregator.register_source(ok)

        result = await aggregator.aggregate("Soup")

        assert spent.calls == 0
        assert result.attempts[0].outcome == AttemptOutcome.QUOTA_EXHAUSTED

    @pytest.mark.asyncio
    async def test_quota_raised_during_search_is_skipped(self, aggregator, registry, make_source):
        source = make_source("a", error=QuotaExhausted("a"), domain="a.com")
        aggregator.register_source(source)

        with pytest.raises(NoCandidatesFound) as exc:
            await aggregator.aggregate("Soup")

        assert exc.value.attempts[0].outcome == AttemptOutcome.QUOTA_EXHAUSTED
        assert registry.get_blocked_info("a.com") is None

    @pytest.mark.asyncio
    async def test_timeout_reported_to_limiter_not_registry(self, aggregator, limiter, registry, make_source):
        slow = make_source("slow", [Recipe(title="Soup")], priority=1, domain="slow.com", delay=5, timeout_seconds=0.05)
        ok = make_source("ok", [Recipe(title="Soup", ingredients=["stock"])], priority=2)
        aggregator.register_source(slow)
        aggregator.register_source(ok)

        result = await aggregator.aggregate("Soup")

        assert result.attempts[0].outcome == AttemptOutcome.TIMEOUT
        assert result.sources == ["ok"]
        assert limiter.get_domain_state("slow.com").consecutive_errors == 1
        assert registry.get_blocked_info("slow.com") is None

    @pytest.mark.asyncio
    async def test_source_timeout_error_is_a_timeout(self, aggregator, registry, make_source):
        source = make_source("a", error=SourceTimeout("read timed out"), domain="a.com")
        aggregator.register_source(source)

        with pytest.raises(NoCandidatesFound) as exc:
            await aggregator.aggregate("Soup")

        assert exc.value.attempts[0].outcome == AttemptOutcome.TIMEOUT
        assert registry.get_blocked_info("a.com") is None

    @pytest.mark.asyncio
    async def test_rate_limited_feeds_limiter_and_registry(self, aggregator, limiter, registry, clock, make_source):
        limited = make_source(
            "limited",
            error=RateLimited("HTTP 429 rate limit", status_code=429, retry_after=30),
            priority=1,
            domain="limited.com",
        )
        ok = make_source("ok", [Recipe(title="Soup", ingredients=["stock"])], priority=2)
        aggregator.register_source(limited)
        aggregator.register_source(ok)

        result = await aggregator.aggregate("Soup")

        assert result.attempts[0].outcome == AttemptOutcome.RATE_LIMITED
        state = limiter.get_domain_state("limited.com")
        assert state.adaptive_multiplier == pytest.approx(0.5)
        assert state.backoff_until == pytest.approx(clock() + 30)
        info = registry.get_blocked_info("limited.com")
        assert info.attempt_count == 1
        assert info.error_type == BlockErrorType.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_access_blocked_recorded_as_authentication(self, aggregator, registry, make_source):
        source = make_source("a", error=AccessBlocked("HTTP 403 Forbidden", status_code=403), domain="a.com")
        aggregator.register_source(source)

        with pytest.raises(NoCandidatesFound) as exc:
            await aggregator.aggregate("Soup")

        assert exc.value.attempts[0].outcome == AttemptOutcome.ACCESS_BLOCKED
        assert registry.get_blocked_info("a.com").error_type == BlockErrorType.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_network_error_recorded(self, aggregator, registry, make_source):
        source = make_source("a", error=NetworkError("connection refused"), domain="a.com")
        aggregator.register_source(source)

        with pytest.raises(NoCandidatesFound) as exc:
            await aggregator.aggregate("Soup")

        assert exc.value.attempts[0].outcome == AttemptOutcome.NETWORK_ERROR
        assert registry.get_blocked_info("a.com").attempt_count == 1

    @pytest.mark.asyncio
    async def test_parse_error_only_skips_the_source(self, aggregator, registry, make_source):
        broken = make_source("broken", error=ParseError("bad JSON"), priority=1, domain="broken.com")
        ok = make_source("ok", [Recipe(title="Soup", ingredients=["stock"])], priority=2)
        aggregator.register_source(broken)
        aggregator.register_source(ok)

        result = await aggregator.aggregate("Soup")

        assert result.attempts[0].outcome == AttemptOutcome.PARSE_ERROR
        assert registry.get_blocked_info("broken.com") is None
        assert result.sources == ["ok"]

    @pytest.mark.asyncio
    async def test_repeated_failures_block_the_domain(self, aggregator, registry, make_source):
        source = make_source("a", error=AccessBlocked("HTTP 403 Forbidden"), domain="a.com")
        aggregator.register_source(source)

        for _ in range(6):
            with pytest.raises(NoCandidatesFound):
                await aggregator.aggregate("Soup")

        assert source.calls == 5
        assert registry.is_blocked("a.com")

    @pytest.mark.asyncio
    async def test_success_decays_failures(self, aggregator, registry, make_source):
        for _ in range(3):
            registry.record_failure("a.com", "HTTP 500")
        aggregator.register_source(make_source("a", [Recipe(title="Soup", ingredients=["stock"])], domain="a.com"))

        await aggregator.aggregate("Soup")

        assert registry.get_blocked_info("a.com").attempt_count == 1

    @pytest.mark.asyncio
    async def test_registry_store_runs_off_the_event_loop(self, limiter, wall_clock, make_source):
        threads: list[int] = []

        class ThreadRecordingStore(MemoryBlockStore):
            def get(self, domain):
                threads.append(threading.get_ident())
                return super().get(domain)

            def update(self, domain, fn):
                threads.append(threading.get_ident())
                return super().update(domain, fn)

        registry = BlockRegistry(store=ThreadRecordingStore(), settings=BlockSettings(store="memory"), now=wall_clock)
        aggregator = SourceAggregator(limiter, registry)
        aggregator.register_source(make_source("ok", [Recipe(title="Soup", ingredients=["stock"])], priority=1))
        aggregator.register_source(make_source("bad", error=NetworkError("boom"), priority=2))

        await aggregator.aggregate("Soup")

        assert threads
        assert threading.get_ident() not in threads

    @pytest.mark.asyncio
    async def test_empty_and_no_match_outcomes(self, aggregator, make_source):
        aggregator.register_source(make_source("empty", [], priority=1))
        aggregator.register_source(make_source("other", [Recipe(title="Beef Wellington")], priority=2))

        with pytest.raises(NoCandidatesFound) as exc:
            await aggregator.aggregate("Banana Bread")

        assert [a.outcome for a in exc.value.attempts] == [AttemptOutcome.EMPTY, AttemptOutcome.NO_MATCH]
        assert "Banana Bread" in str(exc.value)

    @pytest.mark.asyncio
    async def test_no_sources(self, aggregator):
        with pytest.raises(NoCandidatesFound):
            await aggregator.aggregate("Soup")

    @pytest.mark.asyncio
    async def test_metrics(self, aggregator, make_source):
        aggregator.register_source(make_source("a", [Recipe(title="Soup", ingredients=["stock"])], priority=1))
        aggregator.register_source(make_source("b", error=NetworkError("boom"), priority=2))

        await aggregator.aggregate("Soup")

        a = aggregator.get_metrics("a")
        b = aggregator.get_metrics("b")
        assert a.successful_searches == 1
        assert a.accepted == 1
        assert b.failed_searches == 1
        assert b.error_counts == {"network_error": 1}
        assert b.success_rate == 0.0
        assert aggregator.available_sources == ["a", "b"]
