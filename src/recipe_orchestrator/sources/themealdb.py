"""TheMealDB recipe source (free JSON API, no key required for test key "1")."""
from __future__ import annotations

from typing import Any

import structlog

from recipe_orchestrator.errors import ParseError, SourceError
from recipe_orchestrator.models.candidate import SourceCandidate
from recipe_orchestrator.models.recipe import Ingredient, Recipe
from recipe_orchestrator.sources.base import BaseSource
from recipe_orchestrator.sources.http import HttpClient

logger = structlog.get_logger(__name__)


class TheMealDBSource(BaseSource):
    """Search https://www.themealdb.com by meal name."""

    name = "themealdb"
    domain = "themealdb.com"
    base_url = "https://www.themealdb.com/api/json/v1"
    priority = 1
    confidence = 85
    match_threshold = 0.5
    timeout_seconds = 15.0
    max_lookups = 10

    def __init__(self, http: HttpClient | None = None, api_key: str | None = None) -> None:
        super().__init__(http=http, api_key=api_key or "1")

    async def search(self, query: str) -> list[SourceCandidate]:
        meals = await self._meals(f"{self.base_url}/{self.api_key}/search.php", {"s": query})
        if not meals:
            meals = await self._meals_by_ingredient(query)

        candidates = []
        for meal in meals:
            try:
                candidates.append(self._candidate(self._parse_meal(meal)))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("themealdb.skip_meal", error=str(e))
        logger.debug("themealdb.search", query=query, results=len(candidates))
        return candidates

    async def _meals(self, url: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        data = await self._get_json(url, params=params)
        if not isinstance(data, dict):
            raise ParseError("unexpected TheMealDB payload", source_id=self.name, status_code=200)
        return data.get("meals") or []

    async def _meals_by_ingredient(self, query: str) -> list[dict[str, Any]]:
        """Look up full meals for a main-ingredient match.

        filter.php only returns ids and names, so each hit costs one more
        lookup request.
        """
        hits = await self._meals(f"{self.base_url}/{self.api_key}/filter.php", {"i": query})
        ids = [hit["idMeal"] for hit in hits if isinstance(hit, dict) and hit.get("idMeal")]
        ids = ids[: self.max_lookups]
        if not ids:
            return []

        self.quota.consume(self.name, len(ids))
        urls = [f"{self.base_url}/{self.api_key}/lookup.php?i={meal_id}" for meal_id in ids]
        responses = await self.http.fetch_many(urls, timeout=self.timeout_seconds, source_id=self.name)

        meals = []
        for url, response in zip(urls, responses):
            if isinstance(response, SourceError):
                logger.debug("themealdb.lookup_failed", url=url, error=str(response))
                continue
            try:
                found = response.json().get("meals") or []
            except (ParseError, AttributeError) as e:
                logger.debug("themealdb.lookup_unreadable", url=url, error=str(e))
                continue
            meals.extend(found[:1])
        return meals

    def _parse_meal(self, meal: dict[str, Any]) -> Recipe:
        ingredients = []
        for i in range(1, 21):
            name = (meal.get(f"strIngredient{i}") or "").strip()
            if not name:
                continue
            measure = (meal.get(f"strMeasure{i}") or "").strip()
            text = f"{measure} {name}".strip()
            ingredients.append(Ingredient(text=text, name=name, quantity=measure or None))

        instructions = [
            line.strip()
            for line in (meal.get("strInstructions") or "").splitlines()
            if line.strip()
        ]
        tags = [t.strip() for t in (meal.get("strTags") or "").split(",") if t.strip()]
        if meal.get("strCategory"):
            tags.append(meal["strCategory"])

        return Recipe(
            title=meal["strMeal"],
            ingredients=ingredients,
            instructions=instructions,
            image_url=meal.get("strMealThumb") or None,
            tags=tags,
            cuisine=meal.get("strArea") or None,
            source_url=meal.get("strSource") or f"https://www.themealdb.com/meal/{meal.get('idMeal')}",
        )
